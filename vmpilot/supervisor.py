"""Process supervision for VMs through the PID-file protocol.

This module defines an abstract SupervisorInterface and a LocalSupervisor
implementation that launches the hypervisor with subprocess, records the
child's PID in the VM's PID file, and later signals that PID to stop it.

The PID file is an external oracle that may be stale: every decision is
reconciled against a live process lookup before ``running`` is trusted.
"""
from __future__ import annotations

import os
import shlex
import shutil
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import psutil

from . import logging_config
from .errors import (
    AlreadyRunningError,
    LaunchError,
    NotRunningError,
    PIDFileUnreadableError,
    SignalError,
)
from .resources import ResourceController
from .schemas import RuntimeStatus, VMDefinition, VMState

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_SUPERVISOR)


def format_uptime(seconds: float) -> str:
    seconds = max(int(seconds), 0)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class SupervisorInterface(ABC):
    """Abstract interface for VM process supervision."""

    @abstractmethod
    def start(self, vm: VMDefinition, headless: bool = False) -> int:
        """Launch the VM process and return its PID."""

    @abstractmethod
    def stop(self, vm: VMDefinition) -> None:
        """Terminate the VM process named in its PID file."""

    @abstractmethod
    def probe(self, vm: VMDefinition) -> RuntimeStatus:
        """Report the live state of the VM process. Never raises."""


class LocalSupervisor(SupervisorInterface):
    """Supervises qemu-system-x86_64 processes on the local host.

    - The hypervisor binary comes from VMPILOT_QEMU_BIN or PATH.
    - VMPILOT_LAUNCH_PREFIX (shell-split) wraps the command, e.g. a proot login.
    - ``start`` is fire-and-forget: it returns once the process is spawned.
    """

    def __init__(self, qemu_bin: Optional[str] = None, launch_prefix: Optional[str] = None,
                 stop_timeout: Optional[float] = None,
                 resource_controller: Optional[ResourceController] = None):
        self.qemu_bin = (
            qemu_bin
            or os.environ.get("VMPILOT_QEMU_BIN")
            or shutil.which("qemu-system-x86_64")
            or "qemu-system-x86_64"
        )
        prefix = launch_prefix if launch_prefix is not None else os.environ.get("VMPILOT_LAUNCH_PREFIX", "")
        self.launch_prefix: List[str] = shlex.split(prefix) if prefix else []
        self.stop_timeout = float(
            stop_timeout if stop_timeout is not None else os.environ.get("VMPILOT_STOP_TIMEOUT", "10")
        )
        self.resource_controller = resource_controller or ResourceController()

        logger.debug("LocalSupervisor init: qemu-bin=%s prefix=%s stop_timeout=%.1fs",
                     self.qemu_bin, self.launch_prefix or "none", self.stop_timeout)

    @staticmethod
    def _pid_path(vm: VMDefinition) -> Path:
        return Path(os.path.expanduser(vm.pid_file))

    def read_pid(self, vm: VMDefinition) -> Optional[int]:
        """Return the PID recorded for ``vm``, or None if there is no usable PID file."""
        if not vm.pid_file:
            return None
        try:
            pid = int(self._pid_path(vm).read_text().strip())
        except (OSError, ValueError):
            return None
        return pid if pid > 0 else None

    @staticmethod
    def is_alive(pid: Optional[int]) -> bool:
        if not pid:
            return False
        try:
            # zombies still hold a PID but are gone for our purposes
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            return True

    def build_command(self, vm: VMDefinition, headless: bool = False) -> List[str]:
        cmd = [
            self.qemu_bin,
            "-m", str(vm.ram_mb),
            "-smp", str(vm.cpu_cores),
            "-hda", os.path.expanduser(vm.image_path),
            "-enable-kvm",
            "-cpu", "host",
            "-net", "nic,model=virtio",
            "-net", f"user,hostfwd=tcp::{vm.ssh_port}-:22",
            "-device", "virtio-rng-pci",
        ]
        if vm.vnc_port:
            # qemu takes a display number, offset from the VNC base port
            cmd.extend(["-vnc", f":{max(vm.vnc_port - 5900, 0)}"])
        if headless:
            cmd.extend(["-display", "none"])
        return self.launch_prefix + cmd

    def start(self, vm: VMDefinition, headless: bool = False) -> int:
        existing_pid = self.read_pid(vm)
        if self.is_alive(existing_pid):
            raise AlreadyRunningError(f"VM '{vm.name}' is already running (PID {existing_pid})")
        if vm.status == VMState.RUNNING:
            logger.warning("VM %s marked running but no live process found; treating as stale", vm.name)

        if not vm.pid_file:
            raise LaunchError(f"VM '{vm.name}' has no PID file path configured")

        cmd = self.build_command(vm, headless=headless)
        log_path = Path(os.path.expanduser(vm.log_file)) if vm.log_file else None
        logger.debug("Running: %s", " ".join(cmd))

        try:
            if log_path:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(log_path, "ab") as log:
                    process = subprocess.Popen(
                        cmd,
                        stdin=subprocess.DEVNULL,
                        stdout=log,
                        stderr=subprocess.STDOUT,
                        start_new_session=True,
                    )
            else:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as e:
            raise LaunchError(f"Failed to start VM '{vm.name}': {e}")

        pid_path = self._pid_path(vm)
        try:
            pid_path.parent.mkdir(parents=True, exist_ok=True)
            pid_path.write_text(str(process.pid))
        except OSError as e:
            # an untracked hypervisor could never be stopped again
            process.terminate()
            raise LaunchError(f"Failed to write PID file {pid_path} for VM '{vm.name}': {e}")

        logger.info("Started VM %s (PID: %d)", vm.name, process.pid)
        return process.pid

    def stop(self, vm: VMDefinition) -> None:
        pid_path = self._pid_path(vm) if vm.pid_file else None
        if pid_path is None or not pid_path.exists():
            raise NotRunningError(f"VM '{vm.name}' is not running (no PID file)")

        try:
            pid = int(pid_path.read_text().strip())
        except (OSError, ValueError) as e:
            raise PIDFileUnreadableError(f"Failed to read PID file {pid_path} for VM '{vm.name}': {e}")
        if pid <= 0:
            raise PIDFileUnreadableError(f"PID file {pid_path} for VM '{vm.name}' holds invalid PID {pid}")

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.info("VM %s already stopped (PID %d gone)", vm.name, pid)
            pid_path.unlink(missing_ok=True)
            return
        except OSError as e:
            raise SignalError(f"Failed to stop VM '{vm.name}' (PID {pid}): {e}")

        self._wait_for_exit(vm.name, pid)
        pid_path.unlink(missing_ok=True)
        logger.info("Stopped VM %s (PID %d)", vm.name, pid)

    def _wait_for_exit(self, vm_name: str, pid: int) -> None:
        """Wait for ``pid`` to exit after SIGTERM, escalating to SIGKILL."""
        try:
            psutil.Process(pid).wait(timeout=self.stop_timeout)
            return
        except psutil.NoSuchProcess:
            return
        except psutil.TimeoutExpired:
            logger.warning("VM %s did not exit within %.1fs, sending SIGKILL", vm_name, self.stop_timeout)

        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except OSError as e:
            raise SignalError(f"Failed to force-kill VM '{vm_name}' (PID {pid}): {e}")

    def probe(self, vm: VMDefinition) -> RuntimeStatus:
        pid = self.read_pid(vm)
        if not self.is_alive(pid):
            return RuntimeStatus(is_running=False)

        status = RuntimeStatus(is_running=True, pid=pid)
        try:
            usage = self.resource_controller.usage(pid)
            status.cpu_usage_percent = usage.cpu_percent
            status.mem_usage_mb = usage.mem_mb
        except Exception as e:
            logger.warning("Usage query failed for VM %s (PID %d): %s", vm.name, pid, e)

        try:
            status.uptime = format_uptime(time.time() - psutil.Process(pid).create_time())
        except psutil.Error:
            pass
        return status
