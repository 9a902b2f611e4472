"""Session bookkeeping: what is blocked, for whom, and by which rules."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from netctrl.commands import PendingCommand


class Direction(Enum):
    """Traffic direction a block applies to."""

    OUTBOUND = "out"
    INBOUND = "in"
    BOTH = "both"

    def expand(self) -> Tuple["Direction", ...]:
        """Return the single directions this one stands for."""
        if self is Direction.BOTH:
            return (Direction.OUTBOUND, Direction.INBOUND)
        return (self,)


class RuleKind(Enum):
    FIREWALL_RULE = "firewall-rule"  # netsh rule, value is the rule name
    CGROUP_MATCH = "cgroup"          # iptables -m cgroup, value is the cgroup path
    PID_MATCH = "pid"                # iptables -m owner, value is the pid
    QDISC = "qdisc"                  # tc root qdisc, value is the interface
    DROP_ALL = "drop-all"            # unconditional DROP at the head of a base chain


class SessionStatus(Enum):
    UNBLOCKED = "unblocked"
    PARTIALLY_BLOCKED = "partially-blocked"
    FULLY_BLOCKED = "fully-blocked"


@dataclass(frozen=True)
class RuleRecord:
    """One platform rule this session created and must remove later."""

    kind: RuleKind
    value: Union[str, int]
    direction: Optional[Direction] = None
    host: bool = False

    def describe(self) -> str:
        parts = [self.kind.value, str(self.value)]
        if self.direction is not None:
            parts.append(self.direction.value)
        return ':'.join(parts)


@dataclass
class ImpairmentState:
    """Host-wide impairment currently configured."""

    active: bool = False
    lag_ms: int = 0
    drop_percent: float = 0.0
    interface: Optional[str] = None

    def reset(self):
        self.active = False
        self.lag_ms = 0
        self.drop_percent = 0.0
        self.interface = None


@dataclass
class SessionState:
    """Mutable record written by the rule applier and consumed by retraction.

    Direction flags are derived from the recorded process-scoped rules, so a
    flag is set exactly when a rule for that direction is installed.
    """

    identity: Optional[object] = None
    process_name: Optional[str] = None
    rules: List[RuleRecord] = field(default_factory=list)
    impairment: ImpairmentState = field(default_factory=ImpairmentState)
    pending: List[Tuple[RuleRecord, PendingCommand]] = field(default_factory=list)
    # Rules whose creation command is running; retracted too if we are torn down mid-call
    in_flight: List[RuleRecord] = field(default_factory=list)

    def add(self, record: RuleRecord):
        self.rules.append(record)
        if record in self.in_flight:
            self.in_flight.remove(record)

    def discard(self, record: RuleRecord):
        if record in self.rules:
            self.rules.remove(record)

    def begin(self, record: RuleRecord):
        """Note a rule that is about to be created."""
        self.in_flight.append(record)

    def abandon(self):
        """Forget rules whose creation command did not report success."""
        self.in_flight = []

    def retractable(self) -> List[RuleRecord]:
        """Recorded rules plus any still being created."""
        return self.rules + [r for r in self.in_flight if r not in self.rules]

    def is_blocked(self, direction: Direction) -> bool:
        """True if every single direction in ``direction`` has a process rule."""
        for single in direction.expand():
            if not any(not r.host and r.direction is single for r in self.rules):
                return False
        return True

    def process_rules(self) -> List[RuleRecord]:
        return [r for r in self.rules if not r.host]

    def impairment_rules(self) -> List[RuleRecord]:
        return [r for r in self.rules if r.host]

    def take_impairment_rules(self) -> List[RuleRecord]:
        """Remove and return the host-wide impairment records."""
        taken = self.impairment_rules()
        self.rules = self.process_rules()
        return taken

    @property
    def status(self) -> SessionStatus:
        outbound = self.is_blocked(Direction.OUTBOUND)
        inbound = self.is_blocked(Direction.INBOUND)
        if outbound and inbound:
            return SessionStatus.FULLY_BLOCKED
        if outbound or inbound or self.impairment.active:
            return SessionStatus.PARTIALLY_BLOCKED
        return SessionStatus.UNBLOCKED

    def clear(self):
        """Forget everything; used once retraction has been attempted."""
        self.identity = None
        self.process_name = None
        self.rules = []
        self.pending = []
        self.in_flight = []
        self.impairment.reset()

    def to_dict(self) -> Dict[str, object]:
        return {
            'status': self.status.value,
            'process': self.process_name,
            'identity': str(self.identity) if self.identity is not None else None,
            'outbound': self.is_blocked(Direction.OUTBOUND),
            'inbound': self.is_blocked(Direction.INBOUND),
            'impairment': {
                'active': self.impairment.active,
                'lag_ms': self.impairment.lag_ms,
                'drop_percent': self.impairment.drop_percent,
                'interface': self.impairment.interface,
            },
            'rules': [r.describe() for r in self.rules],
            'pending': len(self.pending),
            'running': sum(1 for _, command in self.pending if not command.done()),
        }
