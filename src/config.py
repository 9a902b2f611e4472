"""Runtime settings for NetCtrl.

Defaults can be overridden through ``NETCTRL_*`` environment variables.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_FALLBACK_INTERFACES = ("eth0", "wlan0", "enp0s3", "ens33", "eno1", "wlp2s0")
DEFAULT_CGROUP_MARKERS = ("flatpak", "app-")

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def sanitize_rule_name(name: str) -> str:
    """Strip characters that netsh and iptables don't like in rule names."""
    safe_name = ''.join(c for c in name if c.isalnum() or c in ('_', '-'))
    if not safe_name:
        raise ValueError(f"Invalid rule name: {name!r}")
    return safe_name


@dataclass
class Settings:
    """Settings shared by the firewall backends, the session and the CLI."""

    rule_name: str = "netctrl"
    default_target: str = "sober"
    chain_out: str = "NETCTRL_OUT"
    chain_in: str = "NETCTRL_IN"
    interface: Optional[str] = None
    fallback_interfaces: Tuple[str, ...] = DEFAULT_FALLBACK_INTERFACES
    cgroup_markers: Tuple[str, ...] = DEFAULT_CGROUP_MARKERS
    background_impairment: bool = True

    def __post_init__(self):
        self.rule_name = sanitize_rule_name(self.rule_name)
        self.chain_out = sanitize_rule_name(self.chain_out)
        self.chain_in = sanitize_rule_name(self.chain_in)
        self.fallback_interfaces = tuple(self.fallback_interfaces)
        self.cgroup_markers = tuple(self.cgroup_markers)


def _split_list(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(',') if item.strip())


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be one of {_TRUE_VALUES + _FALSE_VALUES}, got {value!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from defaults plus any NETCTRL_* environment overrides.

    Args:
        environ: Mapping to read instead of ``os.environ``

    Returns:
        A populated Settings instance

    Raises:
        ValueError: If an override has an invalid value
    """
    if environ is None:
        environ = os.environ

    overrides = {}
    simple = {
        'NETCTRL_RULE_NAME': 'rule_name',
        'NETCTRL_TARGET': 'default_target',
        'NETCTRL_CHAIN_OUT': 'chain_out',
        'NETCTRL_CHAIN_IN': 'chain_in',
        'NETCTRL_INTERFACE': 'interface',
    }
    for env_name, attr in simple.items():
        value = environ.get(env_name)
        if value:
            overrides[attr] = value.strip()

    if environ.get('NETCTRL_FALLBACK_INTERFACES'):
        overrides['fallback_interfaces'] = _split_list(environ['NETCTRL_FALLBACK_INTERFACES'])

    if environ.get('NETCTRL_CGROUP_MARKERS'):
        overrides['cgroup_markers'] = _split_list(environ['NETCTRL_CGROUP_MARKERS'])

    if environ.get('NETCTRL_BACKGROUND'):
        overrides['background_impairment'] = _parse_bool(
            'NETCTRL_BACKGROUND', environ['NETCTRL_BACKGROUND'])

    return Settings(**overrides)
