"""Make sure rules are removed however the process ends.

install() wires SIGINT, SIGTERM (where the platform has it) and interpreter
exit to session.unblock(). Unblocking is idempotent, so running it from both
a signal handler and the exit hook is harmless.
"""

import atexit
import logging
import signal
import sys

logger = logging.getLogger(__name__)


class TeardownGuard:
    """Signal and exit hooks that unblock a session."""

    def __init__(self, session, exit_code: int = 0, announce=print):
        self.session = session
        self.exit_code = exit_code
        self.announce = announce
        self._previous = {}
        self._installed = False

    def install(self) -> "TeardownGuard":
        if self._installed:
            return self

        # Windows supports SIGINT, but not SIGTERM
        signals = [signal.SIGINT]
        if hasattr(signal, 'SIGTERM'):
            signals.append(signal.SIGTERM)

        for signum in signals:
            self._previous[signum] = signal.signal(signum, self._signal_handler)
        atexit.register(self.cleanup)
        self._installed = True
        return self

    def uninstall(self):
        if not self._installed:
            return
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
        atexit.unregister(self.cleanup)
        self._installed = False

    def cleanup(self):
        """Unblock the session. Errors are logged, never raised."""
        try:
            self.session.unblock()
        except Exception:
            logger.exception("Failed to remove rules during teardown")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self.announce("\nCleaning up...")
        logger.info("Received signal %s, removing rules", signum)
        self.cleanup()
        sys.exit(self.exit_code)


def install(session, exit_code: int = 0, announce=print) -> TeardownGuard:
    """Unblock ``session`` on SIGINT/SIGTERM and at interpreter exit."""
    return TeardownGuard(session, exit_code=exit_code, announce=announce).install()
