"""Default outbound network interface lookup (Linux traffic shaping)."""

import logging
from typing import Callable, Iterable, Optional, Sequence

import psutil

from netctrl.commands import CommandRunner
from netctrl.config import DEFAULT_FALLBACK_INTERFACES

logger = logging.getLogger(__name__)


def interface_exists(name: str) -> bool:
    """Check whether a network interface with this name is present."""
    try:
        return name in psutil.net_if_stats()
    except OSError:
        return False


def parse_default_route(line: str) -> Optional[str]:
    """Return the device of a route line like 'default via 10.0.0.1 dev eth0 ...'."""
    tokens = line.split()
    for i, token in enumerate(tokens[:-1]):
        if token == 'dev':
            return tokens[i + 1]
    return None


class InterfaceSelector:
    """Pick the interface the queueing discipline is attached to.

    Order of preference: an explicit override, the device of the default
    route, then the first fallback name that exists on this host.
    """

    def __init__(self, runner: CommandRunner, override: Optional[str] = None,
                 fallbacks: Sequence[str] = DEFAULT_FALLBACK_INTERFACES,
                 exists: Callable[[str], bool] = interface_exists):
        self.runner = runner
        self.override = override
        self.fallbacks = tuple(fallbacks)
        self.exists = exists

    def find(self) -> Optional[str]:
        if self.override:
            return self.override

        line = self.runner.first_line(['ip', 'route', 'show', 'default'])
        if line:
            device = parse_default_route(line)
            if device:
                logger.debug("Default route goes through %s", device)
                return device

        return self._first_existing(self.fallbacks)

    def _first_existing(self, names: Iterable[str]) -> Optional[str]:
        for name in names:
            if self.exists(name):
                logger.debug("Using fallback interface %s", name)
                return name
        logger.warning("No network interface found (tried %s)", ', '.join(self.fallbacks))
        return None
