"""Firewall backends that create and remove NetCtrl's rules.

This module provides the platform half of NetCtrl:
- Windows: Windows Firewall (netsh advfirewall)
- Linux: iptables cgroup / pid-owner matching, tc netem for impairment

Backends only translate requests into commands and report what they created
as RuleRecords. Deciding what is already blocked and remembering the records
is the session's job (see netctrl.session).

All operations require elevated privileges (sudo on Linux, Administrator on Windows).
"""

import logging
import platform
import shutil
from typing import Callable, Iterable, List, Optional

from netctrl.commands import CommandRunner, PendingCommand
from netctrl.config import Settings
from netctrl.errors import ImpairmentNotSupported, RuleCommandFailed
from netctrl.interfaces import InterfaceSelector
from netctrl.resolver import CgroupPath, ExecutablePath, PidOwner
from netctrl.state import Direction, RuleKind, RuleRecord

logger = logging.getLogger(__name__)

# Called with each rule as soon as its creation is reported (or dispatched).
TrackFn = Callable[[RuleRecord, Optional[PendingCommand]], None]
# Called with each rule just before its creation command runs.
BeginFn = Callable[[RuleRecord], None]


class FirewallBackend:
    """Common interface of the platform backends."""

    system = None
    uses_interface = False

    def __init__(self, settings: Settings, runner: Optional[CommandRunner] = None):
        self.settings = settings
        self.runner = runner if runner is not None else CommandRunner()

    def is_available(self) -> bool:
        raise NotImplementedError

    def ensure_base_chains(self):
        """Prepare anything rules depend on. Safe to call more than once."""

    def find_interface(self) -> Optional[str]:
        return None

    def apply_direction(self, identity, direction: Direction,
                        begin: Optional[BeginFn] = None) -> RuleRecord:
        raise NotImplementedError

    def check_impairment(self, lag_ms: int, drop_percent: float):
        """Raise ImpairmentNotSupported if this platform can't do the request."""

    def needs_interface(self, lag_ms: int, drop_percent: float) -> bool:
        return False

    def apply_impairment(self, lag_ms: int, drop_percent: float, interface: Optional[str],
                         track: TrackFn, background: bool = False,
                         begin: Optional[BeginFn] = None):
        raise NotImplementedError

    def reset_impairment(self, records: Iterable[RuleRecord], interface: Optional[str] = None):
        """Remove a previous impairment so a new one can be installed."""
        self.retract(records)

    def retract(self, records: Iterable[RuleRecord]) -> int:
        """Issue the removal command for every record, ignoring failures.

        Returns:
            Number of removal commands that reported success
        """
        removed = 0
        for record in records:
            argv = self.removal_command(record)
            if argv is None:
                continue
            if self.runner.run(argv) == 0:
                removed += 1
                logger.info("Removed %s", record.describe())
            else:
                # Already gone counts as removed
                logger.debug("Removal of %s reported failure, treating as absent",
                             record.describe())
        return removed

    def removal_command(self, record: RuleRecord) -> Optional[List[str]]:
        raise NotImplementedError

    def _create(self, argv: List[str], record: RuleRecord, background: bool = False,
                begin: Optional[BeginFn] = None) -> Optional[PendingCommand]:
        """Run a rule creation command.

        ``begin`` is told about the rule before the command starts, so a
        teardown that interrupts us can still remove it.

        Returns:
            The PendingCommand when dispatched in the background, else None

        Raises:
            RuleCommandFailed: If the command exits nonzero
        """
        if begin is not None:
            begin(record)

        if background:
            pending = self.runner.dispatch(argv)
            logger.info("Dispatched %s", record.describe())
            return pending

        returncode = self.runner.run(argv)
        if returncode != 0:
            logger.error("Failed to create %s (exit %d)", record.describe(), returncode)
            raise RuleCommandFailed(argv, returncode)
        logger.info("Created %s", record.describe())
        return None


class WindowsFirewall(FirewallBackend):
    """Block traffic with Windows Firewall rules named after the session."""

    system = "Windows"

    def is_available(self) -> bool:
        return shutil.which('netsh') is not None

    def rule_name(self, direction: Direction, host: bool = False) -> str:
        scope = "_host" if host else ""
        return f"{self.settings.rule_name}{scope}_{direction.value}"

    def apply_direction(self, identity, direction: Direction,
                        begin: Optional[BeginFn] = None) -> RuleRecord:
        if not isinstance(identity, ExecutablePath):
            raise TypeError(f"Windows rules need an executable path, got {identity!r}")

        name = self.rule_name(direction)
        argv = [
            'netsh', 'advfirewall', 'firewall', 'add', 'rule',
            f'name={name}',
            f'dir={direction.value}',
            'action=block',
            'protocol=any',
            f'program={identity.path}',
            'enable=yes',
            'profile=any',
        ]
        record = RuleRecord(RuleKind.FIREWALL_RULE, name, direction)
        self._create(argv, record, begin=begin)
        return record

    def check_impairment(self, lag_ms: int, drop_percent: float):
        # Windows Firewall can only block, not delay or drop a fraction of packets
        if drop_percent < 100:
            raise ImpairmentNotSupported(
                "Windows only supports a complete block (drop 100%); "
                f"lag {lag_ms}ms / drop {drop_percent}% is not available"
            )
        if lag_ms > 0:
            logger.warning("Ignoring %dms lag: Windows can only block completely", lag_ms)

    def apply_impairment(self, lag_ms: int, drop_percent: float, interface: Optional[str],
                         track: TrackFn, background: bool = False,
                         begin: Optional[BeginFn] = None):
        self.check_impairment(lag_ms, drop_percent)
        for direction in (Direction.INBOUND, Direction.OUTBOUND):
            name = self.rule_name(direction, host=True)
            argv = [
                'netsh', 'advfirewall', 'firewall', 'add', 'rule',
                f'name={name}',
                f'dir={direction.value}',
                'action=block',
                'protocol=any',
                'enable=yes',
                'profile=any',
            ]
            record = RuleRecord(RuleKind.FIREWALL_RULE, name, direction, host=True)
            track(record, self._create(argv, record, background, begin))

    def removal_command(self, record: RuleRecord) -> Optional[List[str]]:
        if record.kind is not RuleKind.FIREWALL_RULE:
            logger.warning("Windows backend can't remove %s", record.describe())
            return None
        return ['netsh', 'advfirewall', 'firewall', 'delete', 'rule', f'name={record.value}']


class LinuxFirewall(FirewallBackend):
    """Block traffic with iptables and impair it with tc netem."""

    system = "Linux"
    uses_interface = True

    def __init__(self, settings: Settings, runner: Optional[CommandRunner] = None,
                 selector: Optional[InterfaceSelector] = None):
        super().__init__(settings, runner)
        self.selector = selector if selector is not None else InterfaceSelector(
            self.runner,
            override=settings.interface,
            fallbacks=settings.fallback_interfaces,
        )

    def is_available(self) -> bool:
        return shutil.which('iptables') is not None

    def chain(self, direction: Direction) -> str:
        if direction is Direction.INBOUND:
            return self.settings.chain_in
        return self.settings.chain_out

    @staticmethod
    def base_chain(direction: Direction) -> str:
        return 'INPUT' if direction is Direction.INBOUND else 'OUTPUT'

    def ensure_base_chains(self):
        """Create NetCtrl's chains and jump to them from INPUT/OUTPUT.

        Creation and linking are both skipped when already in place, so this
        can run at every startup.
        """
        for direction in (Direction.OUTBOUND, Direction.INBOUND):
            chain = self.chain(direction)
            base = self.base_chain(direction)

            # Nonzero here just means the chain already exists
            self.runner.run(['iptables', '-w', '-N', chain])

            if self.runner.run(['iptables', '-w', '-C', base, '-j', chain]) != 0:
                returncode = self.runner.run(['iptables', '-w', '-I', base, '-j', chain])
                if returncode != 0:
                    logger.error("Could not link %s into %s (exit %d)", chain, base, returncode)
                else:
                    logger.info("Linked %s into %s", chain, base)

    def find_interface(self) -> Optional[str]:
        return self.selector.find()

    def _match(self, record: RuleRecord) -> List[str]:
        if record.kind is RuleKind.CGROUP_MATCH:
            return ['-m', 'cgroup', '--path', str(record.value)]
        return ['-m', 'owner', '--pid-owner', str(record.value)]

    def apply_direction(self, identity, direction: Direction,
                        begin: Optional[BeginFn] = None) -> RuleRecord:
        if isinstance(identity, CgroupPath):
            record = RuleRecord(RuleKind.CGROUP_MATCH, identity.path, direction)
        elif isinstance(identity, PidOwner):
            record = RuleRecord(RuleKind.PID_MATCH, identity.pid, direction)
        else:
            raise TypeError(f"Linux rules need a cgroup path or pid, got {identity!r}")

        argv = ['iptables', '-w', '-A', self.chain(direction)] + self._match(record) + ['-j', 'DROP']
        self._create(argv, record, begin=begin)
        return record

    @staticmethod
    def is_pure_drop(lag_ms: int, drop_percent: float) -> bool:
        return lag_ms == 0 and drop_percent >= 100

    def needs_interface(self, lag_ms: int, drop_percent: float) -> bool:
        if lag_ms == 0 and drop_percent == 0:
            return False
        return not self.is_pure_drop(lag_ms, drop_percent)

    @staticmethod
    def netem_command(interface: str, lag_ms: int, drop_percent: float) -> List[str]:
        argv = ['tc', 'qdisc', 'add', 'dev', interface, 'root', 'netem']
        if lag_ms > 0:
            argv += ['delay', f'{lag_ms}ms']
        if drop_percent > 0:
            argv += ['loss', f'{drop_percent:.2f}%']
        return argv

    def apply_impairment(self, lag_ms: int, drop_percent: float, interface: Optional[str],
                         track: TrackFn, background: bool = False,
                         begin: Optional[BeginFn] = None):
        if lag_ms == 0 and drop_percent == 0:
            return

        if self.is_pure_drop(lag_ms, drop_percent):
            # Unconditional DROP at the head of both base chains converges faster than netem
            for direction in (Direction.INBOUND, Direction.OUTBOUND):
                base = self.base_chain(direction)
                record = RuleRecord(RuleKind.DROP_ALL, base, direction, host=True)
                argv = ['iptables', '-w', '-I', base, '-j', 'DROP']
                track(record, self._create(argv, record, background, begin))
            return

        record = RuleRecord(RuleKind.QDISC, interface, host=True)
        argv = self.netem_command(interface, lag_ms, drop_percent)
        track(record, self._create(argv, record, background, begin))

    def reset_impairment(self, records: Iterable[RuleRecord], interface: Optional[str] = None):
        """Remove prior impairment rules and the root qdisc.

        Only one root qdisc can exist per interface, so this deletes it once
        per interface involved even if it was never recorded.
        """
        records = list(records)
        self.retract(r for r in records if r.kind is not RuleKind.QDISC)

        interfaces = []
        for record in records:
            if record.kind is RuleKind.QDISC and record.value not in interfaces:
                interfaces.append(record.value)
        if interface and interface not in interfaces:
            interfaces.append(interface)

        for name in interfaces:
            self.runner.run(['tc', 'qdisc', 'del', 'dev', name, 'root'])
            logger.info("Cleared root qdisc on %s", name)

    def removal_command(self, record: RuleRecord) -> Optional[List[str]]:
        if record.kind is RuleKind.QDISC:
            return ['tc', 'qdisc', 'del', 'dev', str(record.value), 'root']
        if record.kind is RuleKind.DROP_ALL:
            return ['iptables', '-w', '-D', str(record.value), '-j', 'DROP']
        if record.kind in (RuleKind.CGROUP_MATCH, RuleKind.PID_MATCH):
            return (['iptables', '-w', '-D', self.chain(record.direction)]
                    + self._match(record) + ['-j', 'DROP'])
        logger.warning("Linux backend can't remove %s", record.describe())
        return None


def select_backend(settings: Settings, runner: Optional[CommandRunner] = None,
                   system: Optional[str] = None) -> FirewallBackend:
    """Return the backend for the platform we're running on.

    Raises:
        NotImplementedError: On platforms without a backend
    """
    system = system or platform.system()
    if system == "Windows":
        return WindowsFirewall(settings, runner)
    if system == "Linux":
        return LinuxFirewall(settings, runner)
    raise NotImplementedError(f"Blocking not supported on {system}")
