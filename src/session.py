"""Rule lifecycle manager.

NetCtrl resolves a target process once, asks the platform backend for the
rules a request needs, remembers every rule that was created, and removes
exactly those rules again on unblock. It is the only place that decides
whether a request is already satisfied.

Usage::

    with NetCtrl() as net:
        net.block_outbound("game")
        ...
    # every rule is gone here
"""

import dataclasses
import logging
import math
import threading
from typing import Dict, List, Optional, Tuple

from netctrl.commands import PendingCommand
from netctrl.config import Settings, load_settings
from netctrl.errors import InterfaceNotFound, PrivilegeDenied, RuleCommandFailed
from netctrl.firewall import FirewallBackend, select_backend
from netctrl.privilege import is_admin
from netctrl.resolver import ProcessResolver
from netctrl.state import Direction, RuleRecord, SessionState, SessionStatus

logger = logging.getLogger(__name__)


def validate_impairment(lag_ms, drop_percent) -> Tuple[int, float]:
    """Check and normalise impairment parameters.

    Raises:
        ValueError: If lag is not a non-negative whole number of milliseconds
            or drop is outside [0, 100]
    """
    if isinstance(lag_ms, bool) or isinstance(drop_percent, bool):
        raise ValueError("lag and drop must be numbers")

    lag = float(lag_ms)
    if not lag.is_integer() or lag < 0:
        raise ValueError(f"Lag must be a whole number of milliseconds >= 0, got {lag_ms}")

    drop = float(drop_percent)
    if math.isnan(drop) or not 0 <= drop <= 100:
        raise ValueError(f"Drop percentage must be between 0 and 100, got {drop_percent}")

    return int(lag), drop


class NetCtrl:
    """Block a process's traffic or impair the whole host, and undo it cleanly."""

    def __init__(self, rule_name: Optional[str] = None, settings: Optional[Settings] = None,
                 backend: Optional[FirewallBackend] = None,
                 resolver: Optional[ProcessResolver] = None,
                 privileged=None):
        """Create a session.

        Args:
            rule_name: Base name for created rules (overrides settings.rule_name)
            settings: Settings to use, loaded from the environment if omitted
            backend: Firewall backend, picked for the current platform if omitted
            resolver: Process resolver, built for the backend's platform if omitted
            privileged: Callable returning True when we may change firewall state

        Raises:
            ValueError: If rule_name disagrees with the rule name of ``backend``
        """
        settings = settings if settings is not None else load_settings()
        if rule_name:
            settings = dataclasses.replace(settings, rule_name=rule_name)
            if backend is not None and backend.settings.rule_name != settings.rule_name:
                raise ValueError(
                    f"rule_name '{settings.rule_name}' does not match the backend's "
                    f"rule name '{backend.settings.rule_name}'"
                )
        self.settings = settings
        self.backend = backend if backend is not None else select_backend(settings)
        self.resolver = resolver if resolver is not None else ProcessResolver(
            system=self.backend.system,
            cgroup_markers=settings.cgroup_markers,
        )
        self._privileged = privileged if privileged is not None else is_admin
        self.state = SessionState()
        # Reentrant so a signal handler running on the main thread can unblock
        self._lock = threading.RLock()

    def __enter__(self) -> "NetCtrl":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # -- queries ---------------------------------------------------------

    def is_blocked(self) -> bool:
        return self.is_blocked_outbound() or self.is_blocked_inbound()

    def is_blocked_outbound(self) -> bool:
        return self.state.is_blocked(Direction.OUTBOUND)

    def is_blocked_inbound(self) -> bool:
        return self.state.is_blocked(Direction.INBOUND)

    def is_active(self) -> bool:
        """True while a host-wide impairment is in place."""
        return self.state.impairment.active

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def identity(self):
        return self.state.identity

    @property
    def records(self) -> List[RuleRecord]:
        return list(self.state.rules)

    @property
    def lag_ms(self) -> int:
        return self.state.impairment.lag_ms

    @property
    def drop_percent(self) -> float:
        return self.state.impairment.drop_percent

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return self.state.to_dict()

    # -- per-process blocking ---------------------------------------------

    def block_outbound(self, process_name: str) -> bool:
        return self.block_direction(process_name, Direction.OUTBOUND)

    def block_inbound(self, process_name: str) -> bool:
        return self.block_direction(process_name, Direction.INBOUND)

    def block(self, process_name: str) -> bool:
        """Block both directions, outbound first.

        A failure in one direction does not undo the other; the first
        RuleCommandFailed is raised after both have been attempted.

        Returns:
            True if at least one new rule was created
        """
        with self._lock:
            applied = False
            failure = None
            for direction in Direction.BOTH.expand():
                try:
                    applied = self.block_direction(process_name, direction) or applied
                except RuleCommandFailed as e:
                    if failure is None:
                        failure = e
            if failure is not None:
                raise failure
            return applied

    def block_direction(self, process_name: str, direction: Direction) -> bool:
        """Block one direction for the session's target.

        Returns:
            True if a rule was created, False if the direction was already blocked

        Raises:
            PrivilegeDenied: Without root/Administrator rights
            TargetNotFound: If the process can't be found
            RuleCommandFailed: If the firewall rejects the rule
        """
        if direction is Direction.BOTH:
            return self.block(process_name)

        self._require_privileges()
        with self._lock:
            if self.state.is_blocked(direction):
                logger.info("%s traffic already blocked", direction.name.lower())
                return False

            identity = self._target(process_name)
            try:
                record = self.backend.apply_direction(identity, direction, self.state.begin)
                self.state.add(record)
            finally:
                self.state.abandon()

            if self.state.identity is None:
                self.state.identity = identity
                self.state.process_name = process_name
            return True

    def _target(self, process_name: str):
        """Return the session's identity, resolving it on first use."""
        if self.state.identity is not None:
            if process_name != self.state.process_name:
                logger.warning(
                    "Session is locked to '%s' (%s); ignoring '%s' until unblock",
                    self.state.process_name, self.state.identity, process_name,
                )
            return self.state.identity
        return self.resolver.resolve(process_name)

    # -- host-wide impairment ---------------------------------------------

    def impair(self, lag_ms: int, drop_percent: float, wait: Optional[bool] = None) -> bool:
        """Delay and/or drop all of the host's traffic.

        Any previous impairment is removed first. Setting both values to zero
        is the same as disable().

        Args:
            lag_ms: Added latency in milliseconds
            drop_percent: Share of packets to drop, 0-100
            wait: Wait for the commands to finish. Defaults to the opposite of
                settings.background_impairment; when not waiting the rules may
                become effective a few milliseconds after this returns.

        Raises:
            PrivilegeDenied: Without root/Administrator rights
            ImpairmentNotSupported: If the platform can't express the request
            InterfaceNotFound: If no interface can be found (Linux)
            RuleCommandFailed: If a waited-for command fails
        """
        lag_ms, drop_percent = validate_impairment(lag_ms, drop_percent)
        self._require_privileges()

        if lag_ms == 0 and drop_percent == 0:
            return self.disable()

        with self._lock:
            self.backend.check_impairment(lag_ms, drop_percent)

            interface = None
            if self.backend.uses_interface:
                interface = self.backend.find_interface()
                if interface is None and self.backend.needs_interface(lag_ms, drop_percent):
                    raise InterfaceNotFound("Could not determine the default network interface")

            self.wait_pending()
            self.backend.reset_impairment(self.state.take_impairment_rules(), interface)
            self.state.impairment.reset()

            if wait is None:
                background = self.settings.background_impairment
            else:
                background = not wait

            try:
                self.backend.apply_impairment(
                    lag_ms, drop_percent, interface, self._track, background,
                    self.state.begin)
            finally:
                self.state.abandon()
                if self.state.impairment_rules():
                    impairment = self.state.impairment
                    impairment.active = True
                    impairment.lag_ms = lag_ms
                    impairment.drop_percent = drop_percent
                    impairment.interface = interface

            logger.info("Impairment set: %dms lag, %.2f%% drop", lag_ms, drop_percent)
            return True

    lag = impair

    def block_host(self, wait: Optional[bool] = None) -> bool:
        """Drop all of the host's traffic."""
        return self.impair(0, 100, wait=wait)

    def disable(self) -> bool:
        """Remove the host-wide impairment, leaving process blocks in place."""
        with self._lock:
            self.wait_pending()
            interface = self.state.impairment.interface
            records = self.state.take_impairment_rules()
            if records:
                self.backend.reset_impairment(records, interface)
                logger.info("Impairment removed")
            self.state.impairment.reset()
            return True

    def _track(self, record: RuleRecord, pending: Optional[PendingCommand]):
        self.state.add(record)
        if pending is not None:
            self.state.pending.append((record, pending))

    def wait_pending(self, timeout: Optional[float] = None) -> bool:
        """Wait for background commands and drop records of any that failed.

        Returns:
            True if every background command succeeded
        """
        with self._lock:
            ok = True
            for record, pending in list(self.state.pending):
                returncode = pending.wait(timeout)
                self.state.pending.remove((record, pending))
                if returncode != 0:
                    ok = False
                    logger.error("Background command failed (exit %d): %s",
                                 returncode, ' '.join(pending.argv))
                    self.state.discard(record)

            if self.state.impairment.active and not self.state.impairment_rules():
                self.state.impairment.reset()
            return ok

    # -- teardown -------------------------------------------------------

    def unblock(self) -> bool:
        """Remove every rule this session created and forget the target.

        Never fails: removal errors are ignored because a missing rule is
        already the desired outcome. Safe to call repeatedly.
        """
        with self._lock:
            self.wait_pending()
            records = self.state.retractable()
            if records:
                removed = self.backend.retract(records)
                logger.info("Unblocked: %d of %d rule(s) removed", removed, len(records))
            self.state.clear()
            return True

    def close(self):
        self.unblock()

    def _require_privileges(self):
        if not self._privileged():
            raise PrivilegeDenied("Administrator/root privileges are required to change firewall rules")
