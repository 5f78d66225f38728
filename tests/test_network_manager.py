"""Unit tests for network isolation module."""
import pytest
import subprocess
from unittest.mock import patch, Mock
from vmpilot import network_manager
from vmpilot.errors import NotRunningError, StateConflictError
from vmpilot.schemas import VMState


@pytest.fixture
def running_vm(vm_factory):
    return vm_factory(status=VMState.RUNNING)


def inserted(mock_run):
    """(position, args) for each iptables -I call."""
    calls = []
    for call in mock_run.call_args_list:
        cmd = call[0][0]
        if "-I" in cmd:
            calls.append((int(cmd[3]), cmd[4:]))
    return calls


class TestFirewallRule:

    def test_drop_rule_spec(self):
        rule = network_manager.FirewallRule(action="DROP", port=2222, tag="vmpilot:dev")
        assert rule.spec() == [
            "-p", "tcp", "--dport", "2222",
            "-m", "comment", "--comment", "vmpilot:dev", "-j", "DROP",
        ]
        assert rule.describe() == "DROP tcp from any to port 2222"

    def test_accept_rule_spec(self):
        rule = network_manager.FirewallRule(action="ACCEPT", port=2222, tag="vmpilot:dev",
                                            source="10.0.0.0/8")
        assert rule.spec()[:4] == ["-p", "tcp", "-s", "10.0.0.0/8"]
        assert rule.describe() == "ACCEPT tcp from 10.0.0.0/8 to port 2222"

    def test_vm_tag(self):
        assert network_manager.vm_tag("dev") == "vmpilot:dev"
        assert network_manager.vm_tag("dev", vpn_enabled=True) == "vmpilot:dev:vpn"


class TestNetworkIsolationManager:
    """Test NetworkIsolationManager class."""

    def test_init_defaults(self, monkeypatch):
        monkeypatch.delenv("VMPILOT_FIREWALL_CHAIN", raising=False)
        monkeypatch.delenv("VMPILOT_IPTABLES_BIN", raising=False)
        nm = network_manager.NetworkIsolationManager()
        assert nm.chain == "INPUT"
        assert nm.iptables_bin == "iptables"
        assert nm.dry_run is False

    def test_init_from_env(self, monkeypatch):
        monkeypatch.setenv("VMPILOT_FIREWALL_CHAIN", "VMPILOT")
        monkeypatch.setenv("VMPILOT_NETWORK_DRY_RUN", "1")
        nm = network_manager.NetworkIsolationManager()
        assert nm.chain == "VMPILOT"
        assert nm.dry_run is True

    def test_normalize_allow_list(self):
        sources, warnings = network_manager.NetworkIsolationManager.normalize_allow_list(
            ["192.168.1.10", "10.0.0.0/8", "not-an-ip", "192.168.1.10/32", " ", "10.1.2.3/8"]
        )
        assert sources == ["192.168.1.10", "10.0.0.0/8"]
        assert len(warnings) == 1
        assert "not-an-ip" in warnings[0]

    def test_build_rules_order(self, running_vm):
        nm = network_manager.NetworkIsolationManager(dry_run=True)
        rules = nm.build_rules(running_vm, ["10.0.0.1", "10.0.0.2"])
        assert [r.action for r in rules] == ["DROP", "ACCEPT", "ACCEPT"]
        assert [r.source for r in rules] == [None, "10.0.0.1", "10.0.0.2"]
        assert all(r.port == 2222 for r in rules)

    @patch('vmpilot.network_manager.subprocess.run')
    def test_isolate_applies_rules_in_order(self, mock_run, running_vm):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
        nm = network_manager.NetworkIsolationManager(dry_run=False)

        result = nm.isolate(running_vm, ["10.0.0.1", "10.0.0.2"])

        calls = inserted(mock_run)
        assert [pos for pos, _ in calls] == [1, 1, 2]
        assert calls[0][1][-1] == "DROP"
        assert calls[1][1][3] == "10.0.0.1"
        assert calls[2][1][3] == "10.0.0.2"
        assert result.mode == "isolated"
        assert result.forwarded_port == 2222
        assert len(result.applied_rules) == 3
        assert result.warnings == []

    @patch('vmpilot.network_manager.subprocess.run')
    def test_isolate_is_best_effort(self, mock_run, running_vm):
        def run(cmd, **kwargs):
            if "10.0.0.1" in cmd:
                return Mock(returncode=1, stdout="", stderr="iptables: Resource busy")
            return Mock(returncode=0, stdout="", stderr="")
        mock_run.side_effect = run
        nm = network_manager.NetworkIsolationManager(dry_run=False)

        result = nm.isolate(running_vm, ["10.0.0.1", "10.0.0.2"])

        assert len(result.applied_rules) == 2
        assert len(result.warnings) == 1
        assert "10.0.0.1" in result.warnings[0]
        # a failed rule does not shift later positions
        assert [pos for pos, _ in inserted(mock_run)] == [1, 1, 1]

    @patch('vmpilot.network_manager.subprocess.run')
    def test_isolate_timeout_becomes_warning(self, mock_run, running_vm):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="iptables", timeout=10)
        nm = network_manager.NetworkIsolationManager(dry_run=False)

        result = nm.isolate(running_vm, ["10.0.0.1"])

        assert result.applied_rules == []
        assert len(result.warnings) == 2

    @patch('vmpilot.network_manager.subprocess.run')
    def test_isolate_requires_running_vm(self, mock_run, vm_factory):
        nm = network_manager.NetworkIsolationManager(dry_run=False)
        with pytest.raises(NotRunningError):
            nm.isolate(vm_factory(), ["10.0.0.1", "10.0.0.2"])
        mock_run.assert_not_called()

    def test_not_running_is_state_conflict(self, vm_factory):
        nm = network_manager.NetworkIsolationManager(dry_run=True)
        with pytest.raises(StateConflictError):
            nm.isolate(vm_factory(), [])

    @patch('vmpilot.network_manager.subprocess.run')
    def test_isolate_dry_run(self, mock_run, running_vm):
        nm = network_manager.NetworkIsolationManager(dry_run=True)
        result = nm.isolate(running_vm, ["10.0.0.1"], vpn_enabled=True)

        mock_run.assert_not_called()
        assert result.mode == "isolated+vpn"
        assert result.vpn_enabled is True
        assert len(result.applied_rules) == 2

    @patch('vmpilot.network_manager.subprocess.run')
    def test_isolate_invalid_entries_warn(self, mock_run, running_vm):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
        nm = network_manager.NetworkIsolationManager(dry_run=False)
        result = nm.isolate(running_vm, ["bogus"])
        assert len(result.applied_rules) == 1
        assert "bogus" in result.warnings[0]

    @patch('vmpilot.network_manager.subprocess.run')
    def test_status_isolated(self, mock_run, running_vm):
        mock_run.return_value = Mock(returncode=0, stderr="", stdout="\n".join([
            "-P INPUT ACCEPT",
            '-A INPUT -s 10.0.0.1/32 -p tcp -m tcp --dport 2222 -m comment --comment "vmpilot:dev" -j ACCEPT',
            '-A INPUT -p tcp -m tcp --dport 2222 -m comment --comment "vmpilot:dev" -j DROP',
            '-A INPUT -p tcp -m tcp --dport 2223 -m comment --comment "vmpilot:build" -j DROP',
            '-A INPUT -p tcp -m tcp --dport 2222 -m comment --comment "vmpilot:dev2" -j DROP',
        ]))
        nm = network_manager.NetworkIsolationManager(dry_run=False)

        status = nm.status(running_vm)

        assert status.mode == "isolated"
        assert status.forwarded_port == 2222
        assert len(status.active_rules) == 2
        assert mock_run.call_args[0][0] == ["iptables", "-S", "INPUT"]

    @patch('vmpilot.network_manager.subprocess.run')
    def test_status_vpn(self, mock_run, running_vm):
        mock_run.return_value = Mock(returncode=0, stderr="", stdout=(
            '-A INPUT -p tcp -m tcp --dport 2222 -m comment --comment vmpilot:dev:vpn -j DROP'
        ))
        nm = network_manager.NetworkIsolationManager(dry_run=False)
        status = nm.status(running_vm)
        assert status.mode == "isolated+vpn"
        assert status.vpn_enabled is True

    @patch('vmpilot.network_manager.subprocess.run')
    def test_status_open(self, mock_run, running_vm):
        mock_run.return_value = Mock(returncode=0, stderr="", stdout="-P INPUT ACCEPT\n")
        nm = network_manager.NetworkIsolationManager(dry_run=False)
        status = nm.status(running_vm)
        assert status.mode == "open"
        assert status.active_rules == []

    @patch('vmpilot.network_manager.subprocess.run')
    def test_status_unknown_on_failure(self, mock_run, running_vm):
        mock_run.return_value = Mock(returncode=3, stdout="", stderr="Permission denied (you must be root)")
        nm = network_manager.NetworkIsolationManager(dry_run=False)
        status = nm.status(running_vm)
        assert status.mode == "unknown"
        assert "Permission denied" in status.warnings[0]

    def test_status_dry_run(self, running_vm):
        nm = network_manager.NetworkIsolationManager(dry_run=True)
        status = nm.status(running_vm)
        assert status.mode == "unknown"
        assert status.warnings

    @patch('vmpilot.network_manager.subprocess.run')
    def test_run_command_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("iptables")
        nm = network_manager.NetworkIsolationManager(dry_run=False)
        with pytest.raises(RuntimeError):
            nm._run_command(["iptables", "-S"])
