import pytest

from netctrl.config import Settings
from netctrl.errors import ImpairmentNotSupported, RuleCommandFailed
from netctrl.firewall import LinuxFirewall, WindowsFirewall, select_backend
from netctrl.resolver import CgroupPath, ExecutablePath, PidOwner
from netctrl.state import Direction, RuleKind, RuleRecord

from conftest import FakeRunner


def collect():
    tracked = []
    return tracked, lambda record, pending: tracked.append((record, pending))


class TestWindowsFirewall:
    def test_rule_names(self, windows_backend):
        assert windows_backend.rule_name(Direction.OUTBOUND) == "netctrl_out"
        assert windows_backend.rule_name(Direction.INBOUND) == "netctrl_in"
        assert windows_backend.rule_name(Direction.INBOUND, host=True) == "netctrl_host_in"

    def test_apply_direction(self, windows_backend, runner):
        record = windows_backend.apply_direction(ExecutablePath('C:\\x\\game.exe'), Direction.INBOUND)

        assert record == RuleRecord(RuleKind.FIREWALL_RULE, "netctrl_in", Direction.INBOUND)
        assert runner.calls == [[
            'netsh', 'advfirewall', 'firewall', 'add', 'rule',
            'name=netctrl_in', 'dir=in', 'action=block', 'protocol=any',
            'program=C:\\x\\game.exe', 'enable=yes', 'profile=any',
        ]]

    def test_apply_direction_failure(self, windows_backend, runner):
        runner.fail_on('netsh')
        with pytest.raises(RuleCommandFailed) as excinfo:
            windows_backend.apply_direction(ExecutablePath('C:\\game.exe'), Direction.OUTBOUND)
        assert excinfo.value.returncode == 1
        assert excinfo.value.command[0] == 'netsh'

    def test_needs_executable_path(self, windows_backend):
        with pytest.raises(TypeError):
            windows_backend.apply_direction(PidOwner(4), Direction.OUTBOUND)

    def test_partial_impairment_unsupported(self, windows_backend):
        with pytest.raises(ImpairmentNotSupported):
            windows_backend.check_impairment(0, 99.9)
        windows_backend.check_impairment(250, 100)

    def test_removal_ignores_missing_rules(self, windows_backend, runner):
        records = [RuleRecord(RuleKind.FIREWALL_RULE, "netctrl_out", Direction.OUTBOUND)]
        assert windows_backend.retract(records) == 0
        assert runner.calls == [['netsh', 'advfirewall', 'firewall', 'delete', 'rule', 'name=netctrl_out']]


class TestLinuxFirewall:
    def test_ensure_base_chains_is_idempotent(self, settings):
        runner = FakeRunner()
        backend = LinuxFirewall(settings, runner)

        backend.ensure_base_chains()
        first = runner.snapshot()
        backend.ensure_base_chains()

        assert runner.snapshot() == first
        assert runner.chains['OUTPUT'] == [('-j', 'NETCTRL_OUT')]
        assert runner.chains['INPUT'] == [('-j', 'NETCTRL_IN')]
        assert len(runner.commands('iptables', '-I')) == 2

    def test_all_iptables_calls_wait_for_lock(self, linux_backend, runner):
        linux_backend.apply_direction(PidOwner(10), Direction.OUTBOUND)
        for call in runner.calls:
            assert call[:2] == ['iptables', '-w']

    def test_cgroup_rule(self, linux_backend, runner):
        record = linux_backend.apply_direction(CgroupPath('/app.slice/app-x.scope'), Direction.INBOUND)

        assert record.kind is RuleKind.CGROUP_MATCH
        assert runner.calls[-1] == [
            'iptables', '-w', '-A', 'NETCTRL_IN',
            '-m', 'cgroup', '--path', '/app.slice/app-x.scope', '-j', 'DROP',
        ]
        assert linux_backend.removal_command(record) == [
            'iptables', '-w', '-D', 'NETCTRL_IN',
            '-m', 'cgroup', '--path', '/app.slice/app-x.scope', '-j', 'DROP',
        ]

    def test_needs_linux_identity(self, linux_backend):
        with pytest.raises(TypeError):
            linux_backend.apply_direction(ExecutablePath('/usr/bin/game'), Direction.OUTBOUND)

    @pytest.mark.parametrize("lag, drop, expected", [
        (100, 50, ['delay', '100ms', 'loss', '50.00%']),
        (200, 0, ['delay', '200ms']),
        (0, 12.5, ['loss', '12.50%']),
        (50, 100, ['delay', '50ms', 'loss', '100.00%']),
    ])
    def test_netem_command(self, lag, drop, expected):
        argv = LinuxFirewall.netem_command('eth0', lag, drop)
        assert argv == ['tc', 'qdisc', 'add', 'dev', 'eth0', 'root', 'netem'] + expected

    def test_needs_interface(self, linux_backend):
        assert linux_backend.needs_interface(100, 0)
        assert linux_backend.needs_interface(10, 100)
        assert not linux_backend.needs_interface(0, 100)
        assert not linux_backend.needs_interface(0, 0)

    def test_pure_drop_inserts_drop_rules(self, linux_backend, runner):
        tracked, track = collect()
        linux_backend.apply_impairment(0, 100, None, track)

        assert [r.kind for r, _ in tracked] == [RuleKind.DROP_ALL, RuleKind.DROP_ALL]
        assert runner.commands('iptables', '-I', 'INPUT', '-j', 'DROP')
        assert runner.commands('iptables', '-I', 'OUTPUT', '-j', 'DROP')
        assert not runner.commands('tc')

    def test_background_dispatch(self, linux_backend, runner):
        tracked, track = collect()
        linux_backend.apply_impairment(30, 0, 'eth0', track, background=True)

        record, pending = tracked[0]
        assert record == RuleRecord(RuleKind.QDISC, 'eth0', host=True)
        assert pending.wait() == 0
        assert runner.dispatched == [['tc', 'qdisc', 'add', 'dev', 'eth0', 'root', 'netem', 'delay', '30ms']]

    def test_reset_deletes_each_qdisc_once(self, linux_backend, runner):
        records = [RuleRecord(RuleKind.QDISC, 'eth0', host=True)]
        linux_backend.reset_impairment(records, 'eth0')
        linux_backend.reset_impairment([], 'wlan0')

        assert runner.commands('tc') == [
            ['tc', 'qdisc', 'del', 'dev', 'eth0', 'root'],
            ['tc', 'qdisc', 'del', 'dev', 'wlan0', 'root'],
        ]


def test_select_backend():
    settings = Settings()
    assert isinstance(select_backend(settings, FakeRunner(), system="Windows"), WindowsFirewall)
    assert isinstance(select_backend(settings, FakeRunner(), system="Linux"), LinuxFirewall)
    with pytest.raises(NotImplementedError):
        select_backend(settings, FakeRunner(), system="Darwin")
