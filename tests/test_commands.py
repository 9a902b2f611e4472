import sys

from netctrl.commands import COMMAND_NOT_FOUND, CommandRunner

MISSING = 'netctrl-no-such-binary-6b1f'


def test_run_returns_exit_status():
    runner = CommandRunner()
    assert runner.run([sys.executable, '-c', 'pass']) == 0
    assert runner.run([sys.executable, '-c', 'import sys; sys.exit(3)']) == 3


def test_missing_binary():
    runner = CommandRunner()
    assert runner.run([MISSING]) == COMMAND_NOT_FOUND
    assert runner.first_line([MISSING]) is None
    assert runner.dispatch([MISSING]).wait() == COMMAND_NOT_FOUND


def test_first_line():
    runner = CommandRunner()
    line = runner.first_line([sys.executable, '-c', 'print("one"); print("two")'])
    assert line == "one"
    assert runner.first_line([sys.executable, '-c', 'pass']) is None
    assert runner.first_line([sys.executable, '-c', 'print("x"); raise SystemExit(1)']) is None


def test_dispatch_does_not_wait():
    runner = CommandRunner()
    pending = runner.dispatch([sys.executable, '-c', 'import sys; sys.exit(4)'])
    assert pending.wait(timeout=30) == 4
    assert pending.done()
