"""Unit tests for the PID-file process supervisor."""
import os
import signal
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil
import pytest

from vmpilot import supervisor as supervisor_module
from vmpilot.errors import (
    AlreadyRunningError,
    LaunchError,
    NotRunningError,
    PIDFileUnreadableError,
    SignalError,
    StateConflictError,
)
from vmpilot.schemas import VMState
from vmpilot.supervisor import LocalSupervisor, format_uptime


def write_pid(vm, pid) -> Path:
    path = Path(vm.pid_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid))
    return path


class TestFormatUptime:

    @pytest.mark.parametrize("seconds,expected", [
        (5, "5s"),
        (65, "1m 5s"),
        (2 * 3600 + 34 * 60 + 10, "2h 34m"),
        (3 * 86400 + 3600 + 60, "3d 1h 1m"),
        (-3, "0s"),
    ])
    def test_format(self, seconds, expected):
        assert format_uptime(seconds) == expected


class TestBuildCommand:

    def test_basic_command(self, vm_factory):
        sup = LocalSupervisor(qemu_bin="/usr/bin/qemu-system-x86_64", launch_prefix="")
        vm = vm_factory()
        cmd = sup.build_command(vm)

        assert cmd[0] == "/usr/bin/qemu-system-x86_64"
        assert cmd[cmd.index("-m") + 1] == "2048"
        assert cmd[cmd.index("-smp") + 1] == "2"
        assert cmd[cmd.index("-hda") + 1] == vm.image_path
        assert "-enable-kvm" in cmd
        assert "user,hostfwd=tcp::2222-:22" in cmd
        assert "-vnc" not in cmd
        assert "-display" not in cmd

    def test_headless_and_vnc(self, vm_factory):
        sup = LocalSupervisor(qemu_bin="qemu-system-x86_64", launch_prefix="")
        vm = vm_factory().model_copy(update={"vnc_port": 5901})
        cmd = sup.build_command(vm, headless=True)

        assert cmd[cmd.index("-vnc") + 1] == ":1"
        assert cmd[cmd.index("-display") + 1] == "none"

    def test_launch_prefix_is_prepended(self, vm_factory):
        sup = LocalSupervisor(qemu_bin="qemu-system-x86_64",
                              launch_prefix="proot-distro login ubuntu --")
        cmd = sup.build_command(vm_factory())
        assert cmd[:4] == ["proot-distro", "login", "ubuntu", "--"]
        assert cmd[4] == "qemu-system-x86_64"

    def test_image_path_is_expanded(self, vm_factory):
        sup = LocalSupervisor(qemu_bin="qemu-system-x86_64", launch_prefix="")
        vm = vm_factory().model_copy(update={"image_path": "~/alpine-vm.qcow2"})
        cmd = sup.build_command(vm)
        assert cmd[cmd.index("-hda") + 1] == os.path.expanduser("~/alpine-vm.qcow2")

    def test_env_configuration(self, monkeypatch):
        monkeypatch.setenv("VMPILOT_QEMU_BIN", "/opt/qemu/bin/qemu")
        monkeypatch.setenv("VMPILOT_LAUNCH_PREFIX", "nice -n 5")
        monkeypatch.setenv("VMPILOT_STOP_TIMEOUT", "3")
        sup = LocalSupervisor()
        assert sup.qemu_bin == "/opt/qemu/bin/qemu"
        assert sup.launch_prefix == ["nice", "-n", "5"]
        assert sup.stop_timeout == 3.0


class TestStart:

    def test_start_writes_pid_file(self, supervisor, vm_factory):
        vm = vm_factory()
        pid = supervisor.start(vm)
        try:
            assert Path(vm.pid_file).read_text().strip() == str(pid)
            assert supervisor.is_alive(pid)
            assert Path(vm.log_file).exists()
        finally:
            supervisor.stop(vm)

    def test_start_twice_conflicts(self, supervisor, vm_factory):
        vm = vm_factory()
        pid = supervisor.start(vm)
        try:
            with pytest.raises(AlreadyRunningError):
                supervisor.start(vm.model_copy(update={"status": VMState.RUNNING}))
            assert supervisor.read_pid(vm) == pid
        finally:
            supervisor.stop(vm)

    def test_already_running_is_state_conflict(self, supervisor, vm_factory, child_process):
        vm = vm_factory(status=VMState.RUNNING)
        write_pid(vm, child_process.pid)
        with pytest.raises(StateConflictError):
            supervisor.start(vm)

    def test_start_over_stale_pid_file(self, supervisor, vm_factory, dead_pid):
        vm = vm_factory(status=VMState.RUNNING)
        write_pid(vm, dead_pid)
        pid = supervisor.start(vm)
        try:
            assert pid != dead_pid
            assert supervisor.read_pid(vm) == pid
        finally:
            supervisor.stop(vm)

    def test_launch_failure(self, vm_factory):
        sup = LocalSupervisor(qemu_bin="/nonexistent/qemu-system-x86_64", launch_prefix="")
        vm = vm_factory()
        with pytest.raises(LaunchError):
            sup.start(vm)
        assert not Path(vm.pid_file).exists()

    def test_start_without_pid_file_path(self, supervisor, vm_factory):
        vm = vm_factory().model_copy(update={"pid_file": ""})
        with pytest.raises(LaunchError):
            supervisor.start(vm)

    def test_pid_file_write_failure_terminates_child(self, supervisor, vm_factory):
        vm = vm_factory()
        process = MagicMock(pid=4321)
        with patch("vmpilot.supervisor.subprocess.Popen", return_value=process), \
                patch.object(Path, "write_text", side_effect=OSError("read-only")):
            with pytest.raises(LaunchError):
                supervisor.start(vm)
        process.terminate.assert_called_once()


class TestStop:

    def test_stop_running_process(self, supervisor, vm_factory):
        vm = vm_factory()
        pid = supervisor.start(vm)
        supervisor.stop(vm)

        assert not Path(vm.pid_file).exists()
        assert not supervisor.is_alive(pid)

    def test_stop_without_pid_file(self, supervisor, vm_factory):
        with pytest.raises(NotRunningError):
            supervisor.stop(vm_factory())

    def test_stop_already_gone_is_success(self, supervisor, vm_factory, dead_pid):
        vm = vm_factory(status=VMState.RUNNING)
        pid_path = write_pid(vm, dead_pid)
        supervisor.stop(vm)
        assert not pid_path.exists()

    @pytest.mark.parametrize("content", ["not-a-pid", "", "-7"])
    def test_stop_unreadable_pid_file(self, supervisor, vm_factory, content):
        vm = vm_factory()
        write_pid(vm, content)
        with pytest.raises(PIDFileUnreadableError):
            supervisor.stop(vm)

    @patch("vmpilot.supervisor.os.kill")
    def test_stop_signal_failure(self, mock_kill, supervisor, vm_factory):
        mock_kill.side_effect = PermissionError("Operation not permitted")
        vm = vm_factory()
        pid_path = write_pid(vm, 1)
        with pytest.raises(SignalError):
            supervisor.stop(vm)
        assert pid_path.exists()

    @patch("vmpilot.supervisor.os.kill")
    def test_stop_escalates_to_sigkill(self, mock_kill, supervisor, vm_factory):
        vm = vm_factory()
        write_pid(vm, 4321)
        process = MagicMock()
        process.wait.side_effect = psutil.TimeoutExpired(5, 4321)
        with patch("vmpilot.supervisor.psutil.Process", return_value=process):
            supervisor.stop(vm)

        sent = [c.args[1] for c in mock_kill.call_args_list]
        assert sent == [signal.SIGTERM, signal.SIGKILL]
        assert not Path(vm.pid_file).exists()


class TestProbe:

    def test_probe_live_process(self, supervisor, vm_factory, child_process):
        vm = vm_factory(status=VMState.RUNNING)
        write_pid(vm, child_process.pid)
        status = supervisor.probe(vm)

        assert status.is_running is True
        assert status.pid == child_process.pid
        assert status.mem_usage_mb is not None
        assert status.uptime is not None

    def test_probe_without_pid_file(self, supervisor, vm_factory):
        status = supervisor.probe(vm_factory(status=VMState.RUNNING))
        assert status.is_running is False
        assert status.pid is None

    def test_probe_dead_process(self, supervisor, vm_factory, dead_pid):
        vm = vm_factory(status=VMState.RUNNING)
        write_pid(vm, dead_pid)
        assert supervisor.probe(vm).is_running is False

    def test_probe_garbage_pid_file(self, supervisor, vm_factory):
        vm = vm_factory()
        write_pid(vm, "garbage")
        assert supervisor.probe(vm).is_running is False

    def test_probe_usage_failure_keeps_running(self, supervisor, vm_factory, child_process):
        vm = vm_factory(status=VMState.RUNNING)
        write_pid(vm, child_process.pid)
        with patch.object(supervisor.resource_controller, "usage", side_effect=psutil.Error("boom")):
            status = supervisor.probe(vm)

        assert status.is_running is True
        assert status.cpu_usage_percent is None
        assert status.mem_usage_mb is None

    def test_zombie_is_not_alive(self):
        process = MagicMock()
        process.status.return_value = psutil.STATUS_ZOMBIE
        with patch("vmpilot.supervisor.psutil.Process", return_value=process):
            assert LocalSupervisor.is_alive(1234) is False

    def test_access_denied_counts_as_alive(self):
        with patch("vmpilot.supervisor.psutil.Process", side_effect=psutil.AccessDenied(1)):
            assert LocalSupervisor.is_alive(1) is True


def test_stopped_process_exits_promptly(supervisor, vm_factory):
    vm = vm_factory()
    pid = supervisor.start(vm)
    started = time.monotonic()
    supervisor.stop(vm)
    # sleep honours SIGTERM, so no SIGKILL wait is needed
    assert time.monotonic() - started < supervisor.stop_timeout
    assert not supervisor_module.LocalSupervisor.is_alive(pid)
