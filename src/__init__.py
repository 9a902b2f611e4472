"""NetCtrl - block a process's network traffic or impair the whole host."""

from netctrl.errors import (
    ImpairmentNotSupported,
    InterfaceNotFound,
    NetCtrlError,
    PrivilegeDenied,
    RuleCommandFailed,
    TargetNotFound,
)
from netctrl.session import NetCtrl
from netctrl.state import Direction, SessionStatus

__version__ = "0.1.0"

__all__ = [
    "NetCtrl",
    "Direction",
    "SessionStatus",
    "NetCtrlError",
    "PrivilegeDenied",
    "TargetNotFound",
    "RuleCommandFailed",
    "InterfaceNotFound",
    "ImpairmentNotSupported",
]
