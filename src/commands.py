"""Execution of platform firewall / traffic-shaping commands.

Commands are passed as argument lists and never through a shell. The core
only looks at exit statuses, plus the first line of output where a lookup
needs it (default route discovery).
"""

import logging
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)

# Exit status reported when the executable itself is missing, like a shell would.
COMMAND_NOT_FOUND = 127


class PendingCommand:
    """A command dispatched in the background.

    Returned by CommandRunner.dispatch. The command may still be running when
    the caller continues; call wait() for its exit status.
    """

    def __init__(self, argv: List[str], process: Optional[subprocess.Popen] = None,
                 returncode: Optional[int] = None):
        self.argv = list(argv)
        self._process = process
        self._returncode = returncode

    def done(self) -> bool:
        """Return True once the command has finished."""
        if self._returncode is not None:
            return True
        if self._process.poll() is None:
            return False
        self._returncode = self._process.returncode
        return True

    def wait(self, timeout: Optional[float] = None) -> int:
        """Block until the command exits and return its exit status.

        Raises:
            subprocess.TimeoutExpired: If timeout elapses first
        """
        if self._returncode is None:
            self._returncode = self._process.wait(timeout=timeout)
        return self._returncode

    def __repr__(self):
        state = self._returncode if self._returncode is not None else 'running'
        return f"PendingCommand({' '.join(self.argv)!r}, {state})"


class CommandRunner:
    """Run commands with subprocess and report their exit status."""

    def run(self, argv: List[str]) -> int:
        """Run a command to completion and return its exit status."""
        logger.debug("run: %s", ' '.join(argv))
        try:
            result = subprocess.run(argv, capture_output=True, text=True)
        except FileNotFoundError:
            logger.debug("command not found: %s", argv[0])
            return COMMAND_NOT_FOUND

        if result.returncode != 0:
            stderr = (result.stderr or result.stdout or '').strip()
            logger.debug("exit %d from %s: %s", result.returncode, argv[0], stderr)
        return result.returncode

    def first_line(self, argv: List[str]) -> Optional[str]:
        """Run a command and return the first line of its output.

        Returns:
            The first line, or None if the command failed or printed nothing
        """
        logger.debug("query: %s", ' '.join(argv))
        try:
            result = subprocess.run(argv, capture_output=True, text=True)
        except FileNotFoundError:
            return None

        if result.returncode != 0 or not result.stdout:
            return None
        lines = result.stdout.splitlines()
        return lines[0] if lines else None

    def dispatch(self, argv: List[str]) -> PendingCommand:
        """Start a command without waiting for it to finish."""
        logger.debug("dispatch: %s", ' '.join(argv))
        try:
            process = subprocess.Popen(
                argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except FileNotFoundError:
            return PendingCommand(argv, returncode=COMMAND_NOT_FOUND)
        return PendingCommand(argv, process=process)
