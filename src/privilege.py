"""Privilege probe used before touching system firewall state."""

import os
import platform


def is_admin() -> bool:
    """Check if running with elevated privileges.

    Returns:
        True if running with sudo/administrator privileges
    """
    system = platform.system()

    if system == "Windows":
        try:
            import ctypes
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        except (AttributeError, OSError):
            return False
    else:  # Unix-like (macOS, Linux)
        return os.geteuid() == 0


def elevation_hint(command: str = "netctrl") -> str:
    """Return a short platform-specific hint on how to rerun with privileges."""
    if platform.system() == "Windows":
        return (
            "This command requires Administrator privileges.\n"
            "  1. Right-click on Command Prompt or PowerShell\n"
            "  2. Select 'Run as administrator'\n"
            f"  3. Run: {command}"
        )
    return (
        "This command requires root privileges.\n"
        f"Run with: sudo {command}"
    )
