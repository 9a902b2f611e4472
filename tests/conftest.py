import copy

import pytest

from netctrl.config import Settings
from netctrl.firewall import LinuxFirewall, WindowsFirewall
from netctrl.interfaces import InterfaceSelector
from netctrl.resolver import ProcessResolver
from netctrl.session import NetCtrl

FLATPAK_CGROUP = (
    "0::/user.slice/user-1000.slice/user@1000.service/app.slice/"
    "app-flatpak-org.vinegarhq.Sober-4242.scope\n"
)


class FakePending:
    def __init__(self, argv, returncode):
        self.argv = list(argv)
        self.returncode = returncode

    def done(self):
        return True

    def wait(self, timeout=None):
        return self.returncode


class FakeRunner:
    """In-memory stand-in for netsh, iptables and tc.

    Keeps the rules each tool would hold and answers with the exit codes the
    real tools use, so tests can compare firewall state before and after.
    """

    def __init__(self, default_route="default via 192.168.1.1 dev eth0 proto dhcp metric 100"):
        self.calls = []
        self.dispatched = []
        self.fail = []
        self.default_route = default_route
        self.netsh_rules = []
        self.chains = {'INPUT': [], 'OUTPUT': []}
        self.qdiscs = {}

    def snapshot(self):
        return copy.deepcopy((self.netsh_rules, self.chains, self.qdiscs))

    def commands(self, *prefix):
        """Calls whose argv starts with ``prefix`` (iptables '-w' ignored)."""
        prefix = list(prefix)
        return [c for c in self.calls if _strip_wait(c)[:len(prefix)] == prefix]

    def fail_on(self, *prefix):
        prefix = list(prefix)
        self.fail.append(lambda argv: _strip_wait(argv)[:len(prefix)] == prefix)

    def run(self, argv):
        self.calls.append(list(argv))
        if any(predicate(argv) for predicate in self.fail):
            return 1
        if argv[0] == 'netsh':
            return self._netsh(argv)
        if argv[0] == 'iptables':
            return self._iptables(_strip_wait(argv))
        if argv[0] == 'tc':
            return self._tc(argv)
        return 0

    def first_line(self, argv):
        self.calls.append(list(argv))
        if argv[:2] == ['ip', 'route']:
            return self.default_route
        return None

    def dispatch(self, argv):
        self.dispatched.append(list(argv))
        return FakePending(argv, self.run(argv))

    def _netsh(self, argv):
        name = next(a.split('=', 1)[1] for a in argv if a.startswith('name='))
        if argv[3] == 'add':
            self.netsh_rules.append(name)
            return 0
        if argv[3] == 'delete':
            if name not in self.netsh_rules:
                return 1
            self.netsh_rules = [n for n in self.netsh_rules if n != name]
            return 0
        return 0

    def _iptables(self, argv):
        op, chain, rule = argv[1], argv[2], tuple(argv[3:])
        if op == '-N':
            if chain in self.chains:
                return 1
            self.chains[chain] = []
            return 0
        if chain not in self.chains:
            return 1
        rules = self.chains[chain]
        if op == '-C':
            return 0 if rule in rules else 1
        if op == '-I':
            rules.insert(0, rule)
            return 0
        if op == '-A':
            rules.append(rule)
            return 0
        if op == '-D':
            if rule not in rules:
                return 1
            rules.remove(rule)
            return 0
        return 2

    def _tc(self, argv):
        op, device = argv[2], argv[4]
        if op == 'add':
            if device in self.qdiscs:
                return 2  # RTNETLINK answers: File exists
            self.qdiscs[device] = argv[5:]
            return 0
        if op == 'del':
            if device not in self.qdiscs:
                return 2
            del self.qdiscs[device]
            return 0
        return 0


def _strip_wait(argv):
    if argv and argv[0] == 'iptables':
        return [a for a in argv if a != '-w']
    return list(argv)


class FakeProcessTable:
    def __init__(self, processes=(), paths=None, cgroups=None):
        self.processes = list(processes)
        self.paths = dict(paths or {})
        self.cgroups = dict(cgroups or {})
        self.lookups = 0

    def list_processes(self):
        self.lookups += 1
        return list(self.processes)

    def query_executable_path(self, pid):
        return self.paths.get(pid)

    def find_pid_by_exact_name(self, name):
        self.lookups += 1
        for pid, proc_name in self.processes:
            if proc_name == name:
                return pid
        return None

    def read_cgroup_file(self, pid):
        return self.cgroups.get(pid)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def linux_backend(settings, runner):
    selector = InterfaceSelector(runner, fallbacks=settings.fallback_interfaces,
                                 exists=lambda name: False)
    backend = LinuxFirewall(settings, runner, selector=selector)
    backend.ensure_base_chains()
    return backend


@pytest.fixture
def windows_backend(settings, runner):
    return WindowsFirewall(settings, runner)


@pytest.fixture
def linux_table():
    return FakeProcessTable(
        processes=[(1, 'systemd'), (321, 'game-helper'), (4242, 'game'), (5000, 'sober')],
        cgroups={
            4242: "0::/user.slice/user-1000.slice/session-2.scope\n",
            5000: FLATPAK_CGROUP,
        },
    )


@pytest.fixture
def windows_table():
    return FakeProcessTable(
        processes=[(4, 'System'), (640, 'explorer.exe'), (2200, 'game.exe')],
        paths={
            640: 'C:\\Windows\\explorer.exe',
            2200: 'C:\\Games\\Game\\game.exe',
        },
    )


@pytest.fixture
def linux_session(settings, linux_backend, linux_table):
    return NetCtrl(
        settings=settings,
        backend=linux_backend,
        resolver=ProcessResolver(linux_table, system="Linux"),
        privileged=lambda: True,
    )


@pytest.fixture
def windows_session(settings, windows_backend, windows_table):
    return NetCtrl(
        settings=settings,
        backend=windows_backend,
        resolver=ProcessResolver(windows_table, system="Windows"),
        privileged=lambda: True,
    )
