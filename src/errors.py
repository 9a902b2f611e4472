"""Exceptions raised by NetCtrl.

Each error also derives from the builtin exception a caller would expect for
the same situation, so ``except PermissionError`` or ``except ValueError``
keeps working for code that does not know about NetCtrl.
"""

from typing import List, Optional


class NetCtrlError(Exception):
    """Base class for all NetCtrl errors."""


class PrivilegeDenied(NetCtrlError, PermissionError):
    """Raised when an operation needs root/Administrator and we don't have it."""


class TargetNotFound(NetCtrlError, ValueError):
    """Raised when no running process matches the requested name."""

    def __init__(self, process_name: str):
        self.process_name = process_name
        super().__init__(
            f"Process '{process_name}' not found.\n"
            f"Make sure the application is running and try again."
        )


class RuleCommandFailed(NetCtrlError, RuntimeError):
    """Raised when a firewall or traffic-shaping command exits nonzero."""

    def __init__(self, command: List[str], returncode: int, message: Optional[str] = None):
        self.command = list(command)
        self.returncode = returncode
        if message is None:
            message = f"Command failed (code {returncode}): {' '.join(self.command)}"
        super().__init__(message)


class InterfaceNotFound(NetCtrlError, RuntimeError):
    """Raised when no outbound network interface can be determined."""


class ImpairmentNotSupported(NetCtrlError, NotImplementedError):
    """Raised when the platform cannot express the requested impairment."""
