"""CLI interface for NetCtrl."""

import logging
import sys
from typing import Callable, List, Optional

from netctrl.config import Settings, load_settings
from netctrl.errors import NetCtrlError
from netctrl.firewall import select_backend
from netctrl.privilege import elevation_hint, is_admin
from netctrl.session import NetCtrl
from netctrl import teardown

logger = logging.getLogger(__name__)

COMMANDS = [
    ("block-out / bo", "Block OUTBOUND traffic of the target"),
    ("block-in  / bi", "Block INBOUND traffic of the target"),
    ("block     / b", "Block BOTH directions"),
    ("unblock   / u", "Remove every rule (process blocks and lag)"),
    ("lag <ms> <%>", "Delay and drop ALL host traffic"),
    ("block-host / bh", "Drop ALL host traffic"),
    ("off       / d", "Disable lag / host block"),
    ("status    / s", "Show status"),
    ("help      / h", "Show this list"),
    ("quit      / q", "Exit (rules are removed)"),
]


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )


def require_elevated_privileges(command: str = "netctrl"):
    """Check for elevated privileges and exit with message if not available.

    Args:
        command: The command being executed (for error message)
    """
    if not is_admin():
        print("=" * 70)
        print("ERROR: Elevated Privileges Required")
        print("=" * 70)
        print()
        print(elevation_hint(command))
        print()
        sys.exit(1)


def print_commands():
    print("Commands:")
    for usage, description in COMMANDS:
        print(f"  {usage:<18} {description}")
    print()
    print("Examples:")
    print("  lag 100 50         100ms + 50% loss")
    print("  lag 200 0          200ms delay only")
    print("  lag 0 50           50% loss only")
    print()


def print_banner(target: str):
    print("=" * 44)
    print("   NetCtrl - Network Traffic Blocker")
    print("=" * 44)
    print()
    print(f"Target process: {target}")
    print()
    print_commands()


def prompt_status(session: NetCtrl) -> str:
    """Return the status tag shown in front of the prompt."""
    if session.is_blocked_outbound() and session.is_blocked_inbound():
        status = "[BLOCKED ⬆⬇]"
    elif session.is_blocked_outbound():
        status = "[BLOCKED ⬆]"
    elif session.is_blocked_inbound():
        status = "[BLOCKED ⬇]"
    else:
        status = "[UNBLOCKED]"

    if session.is_active():
        status += "[LAG]"
    return status


def show_status(session: NetCtrl, target: str):
    print()
    print("-" * 36)
    print(f"Target:   {target}")
    if session.identity is not None:
        print(f"Locked:   {session.identity}")
    print(f"Outbound: {'BLOCKED ⬆' if session.is_blocked_outbound() else 'OPEN'}")
    print(f"Inbound:  {'BLOCKED ⬇' if session.is_blocked_inbound() else 'OPEN'}")
    if session.is_active():
        print(f"Lag:      {session.lag_ms}ms")
        print(f"Drop:     {session.drop_percent:g}%")
    else:
        print("Lag:      OFF")
    running = session.snapshot()["running"]
    if running:
        print(f"Pending:  {running} command(s) still running")
    print("-" * 36)
    print()


def _block(session: NetCtrl, target: str, args: List[str], which: str):
    if which == "out":
        if session.is_blocked_outbound():
            print("Outbound already blocked!")
            return
        print("Blocking OUTBOUND traffic...")
        session.block_outbound(target)
        print("✓ OUTBOUND BLOCKED! (Process can't send data)\n")
    elif which == "in":
        if session.is_blocked_inbound():
            print("Inbound already blocked!")
            return
        print("Blocking INBOUND traffic...")
        session.block_inbound(target)
        print("✓ INBOUND BLOCKED! (Process can't receive data)\n")
    else:
        if session.is_blocked_outbound() and session.is_blocked_inbound():
            print("Already blocked both directions!")
            return
        print("Blocking BOTH directions...")
        session.block(target)
        print("✓ FULLY BLOCKED! (No network access)\n")


def _unblock(session: NetCtrl, target: str, args: List[str]):
    if not session.is_blocked() and not session.is_active():
        print("Already unblocked!")
        return
    print("Unblocking...")
    session.unblock()
    print("✓ UNBLOCKED! (Network restored)\n")


def _lag(session: NetCtrl, target: str, args: List[str]):
    try:
        lag_ms = int(args[0])
        drop_percent = float(args[1])
    except (IndexError, ValueError):
        print("Usage: lag <ms> <%>\n")
        return

    session.impair(lag_ms, drop_percent)
    print(f"✓ Applied: {lag_ms}ms + {drop_percent:g}% drop\n")


def _block_host(session: NetCtrl, target: str, args: List[str]):
    print("⚠️  WARNING: Affects ALL network traffic!")
    session.block_host()
    print("✓ Host blocked!\n")


def _disable(session: NetCtrl, target: str, args: List[str]):
    session.disable()
    print("✓ Disabled\n")


HANDLERS = {
    'block-out': lambda s, t, a: _block(s, t, a, "out"),
    'bo': lambda s, t, a: _block(s, t, a, "out"),
    'block-in': lambda s, t, a: _block(s, t, a, "in"),
    'bi': lambda s, t, a: _block(s, t, a, "in"),
    'block': lambda s, t, a: _block(s, t, a, "both"),
    'b': lambda s, t, a: _block(s, t, a, "both"),
    'unblock': _unblock,
    'u': _unblock,
    'lag': _lag,
    'l': _lag,
    'block-host': _block_host,
    'bh': _block_host,
    'off': _disable,
    'disable': _disable,
    'd': _disable,
    'status': lambda s, t, a: show_status(s, t),
    's': lambda s, t, a: show_status(s, t),
    'help': lambda s, t, a: print_commands(),
    'h': lambda s, t, a: print_commands(),
    '?': lambda s, t, a: print_commands(),
}

QUIT_COMMANDS = ('quit', 'q', 'exit')


def handle_command(session: NetCtrl, target: str, line: str) -> bool:
    """Run one line typed at the prompt.

    Returns:
        False when the user asked to quit, True otherwise
    """
    words = line.strip().split()
    if not words:
        return True

    command, args = words[0].lower(), words[1:]
    if command in QUIT_COMMANDS:
        return False

    handler = HANDLERS.get(command)
    if handler is None:
        print("Unknown command. Type 'help' for the list of commands.\n")
        return True

    try:
        handler(session, target, args)
    except NetCtrlError as e:
        print(f"✗ Failed! {e}\n")
    except ValueError as e:
        print(f"✗ {e}\n")
    return True


def run_shell(session: NetCtrl, target: str, read_line: Optional[Callable[[str], str]] = None):
    """Read commands until quit or end of input (from input() by default)."""
    if read_line is None:
        read_line = input
    while True:
        try:
            line = read_line(f"{prompt_status(session)} > ")
        except EOFError:
            print()
            break
        if not handle_command(session, target, line):
            break


def print_usage():
    print("NetCtrl - Network Traffic Blocker")
    print("\nUsage:")
    print("  netctrl [process]             Control network access of a process")
    print("\nOptions:")
    print("  -v, --verbose                 Log every firewall command")
    print("  -h, --help                    Show this help message")
    print("\nThe process name defaults to NETCTRL_TARGET or 'sober'.")
    print("Requires root (Linux) or Administrator (Windows).")


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None):
    """Main entry point for the CLI."""
    args = list(sys.argv[1:] if argv is None else argv)

    if any(a in ('-h', '--help', 'help') for a in args):
        print_usage()
        sys.exit(0)

    verbose = any(a in ('-v', '--verbose') for a in args)
    args = [a for a in args if a not in ('-v', '--verbose')]
    configure_logging(verbose)

    require_elevated_privileges("netctrl " + ' '.join(args) if args else "netctrl")

    try:
        settings = settings if settings is not None else load_settings()
        backend = select_backend(settings)
    except (ValueError, NotImplementedError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not backend.is_available():
        print(f"Warning: firewall tools for {backend.system} were not found on PATH.")

    target = args[0] if args else settings.default_target

    backend.ensure_base_chains()
    session = NetCtrl(settings=settings, backend=backend)
    guard = teardown.install(session)
    logger.debug("Session for '%s' using the %s backend", target, backend.system)

    print_banner(target)
    try:
        run_shell(session, target)
    finally:
        session.unblock()
        guard.uninstall()

    print("\nGoodbye!")
    sys.exit(0)


if __name__ == '__main__':
    main()
