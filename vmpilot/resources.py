"""Resource allocation and live usage accounting for VMs.

Scaling only edits the declared allocation; it never touches a running
process, so callers must tell the operator a restart is needed.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import psutil

from . import logging_config
from .errors import InvalidRequestError, NoChangeRequestedError, ResourceLimitError
from .schemas import ResourcePrediction, ResourceUsage, VMDefinition

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_SUPERVISOR)

# linear growth model used by predict()
RAM_GROWTH_PER_DAY_MB = 100


class ResourceController:
    def __init__(self, cpu_sample_interval: float = 0.1):
        self.cpu_sample_interval = cpu_sample_interval

    def scale(self, vm: VMDefinition, new_ram: Optional[int] = None,
              new_cpu: Optional[int] = None) -> VMDefinition:
        """Return a copy of ``vm`` with the requested RAM/CPU allocation.

        Every requested value is checked before anything changes, so either
        all requested changes apply or none do.

        Raises:
            NoChangeRequestedError: Neither RAM nor CPU was supplied.
            ResourceLimitError: A value is below 1 or above the VM's maximum.
        """
        if new_ram is None and new_cpu is None:
            raise NoChangeRequestedError("At least one resource (ram or cpu) must be specified")

        limits = vm.resources
        if new_ram is not None:
            if new_ram < 1:
                raise ResourceLimitError(f"RAM must be at least 1 MB (requested {new_ram})")
            if new_ram > limits.max_ram:
                raise ResourceLimitError(
                    f"Requested RAM {new_ram} MB exceeds maximum {limits.max_ram} MB for VM '{vm.name}'"
                )
        if new_cpu is not None:
            if new_cpu < 1:
                raise ResourceLimitError(f"CPU count must be at least 1 (requested {new_cpu})")
            if new_cpu > limits.max_cpu:
                raise ResourceLimitError(
                    f"Requested CPU {new_cpu} cores exceeds maximum {limits.max_cpu} for VM '{vm.name}'"
                )

        vm_update = {}
        limits_update = {}
        if new_ram is not None:
            vm_update["ram_mb"] = new_ram
            limits_update["current_ram"] = new_ram
        if new_cpu is not None:
            vm_update["cpu_cores"] = new_cpu
            limits_update["current_cpu"] = new_cpu
        vm_update["resources"] = limits.model_copy(update=limits_update)

        scaled = vm.model_copy(update=vm_update, deep=True)
        logger.info(
            "Scaled VM %s: ram %d -> %d MB, cpu %d -> %d",
            vm.name, vm.ram_mb, scaled.ram_mb, vm.cpu_cores, scaled.cpu_cores,
        )
        return scaled

    def usage(self, pid: int) -> ResourceUsage:
        """Sample memory (RSS, MB) and CPU percent for ``pid``.

        Each figure is reported as ``None`` when it cannot be measured.
        """
        try:
            process = psutil.Process(pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError) as e:
            logger.debug("Cannot inspect PID %s: %s", pid, e)
            return ResourceUsage()

        mem_mb = None
        try:
            mem_mb = round(process.memory_info().rss / (1024 * 1024), 1)
        except psutil.Error as e:
            logger.debug("Memory usage unavailable for PID %s: %s", pid, e)

        cpu_percent = None
        try:
            cpu_percent = process.cpu_percent(interval=self.cpu_sample_interval)
        except psutil.Error as e:
            logger.debug("CPU usage unavailable for PID %s: %s", pid, e)

        return ResourceUsage(mem_mb=mem_mb, cpu_percent=cpu_percent)

    def disk_usage(self, vm: VMDefinition) -> Optional[int]:
        image = Path(os.path.expanduser(vm.image_path))
        try:
            return image.stat().st_size
        except OSError:
            return None

    def predict(self, vm: VMDefinition, horizon_days: int) -> ResourcePrediction:
        """Project RAM needs ``horizon_days`` ahead with a linear growth model."""
        if horizon_days < 1:
            raise InvalidRequestError(f"horizon_days must be positive (got {horizon_days})")

        predicted_ram = vm.ram_mb + horizon_days * RAM_GROWTH_PER_DAY_MB
        return ResourcePrediction(
            horizon_days=horizon_days,
            current_ram_mb=vm.ram_mb,
            predicted_ram_mb=predicted_ram,
            current_cpu=vm.cpu_cores,
            predicted_cpu=vm.cpu_cores,
            upgrade_recommended=predicted_ram > vm.ram_mb * 2,
        )
