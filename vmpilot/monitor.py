"""Read-only monitoring of VM processes.

Two pieces live here:
- ``ResourceMonitor`` runs a fixed-interval sampling loop until it is
  cancelled, interrupted or reaches its iteration bound.
- ``check_coherence`` compares the registry with the live process table and
  reports mismatches without correcting them (repair is the caller's call).
"""
from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Iterable, List, Mapping, Optional

from . import logging_config
from .schemas import CoherenceIssue, RuntimeStatus, UsageSample, VMDefinition, VMState

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_SUPERVISOR)

DEFAULT_INTERVAL = 2.0


class ResourceMonitor:
    """Periodic sampler driven by a cancellation event.

    Args:
        sampler: Callable returning one UsageSample per tick.
        interval: Seconds between samples.
        on_sample: Optional callback invoked with each sample.
        history: Number of recent samples kept in ``samples``.
    """

    def __init__(self, sampler: Callable[[], UsageSample], interval: float = DEFAULT_INTERVAL,
                 on_sample: Optional[Callable[[UsageSample], None]] = None, history: int = 100):
        self.sampler = sampler
        self.interval = max(float(interval), 0.0)
        self.on_sample = on_sample
        self.samples: Deque[UsageSample] = deque(maxlen=history)

    def run(self, max_iterations: Optional[int] = None,
            cancel_event: Optional[threading.Event] = None) -> List[UsageSample]:
        """Sample until cancelled or ``max_iterations`` samples were taken.

        Returns the samples taken during this run.
        """
        cancel_event = cancel_event or threading.Event()
        taken: List[UsageSample] = []
        logger.info("Monitor loop starting (interval=%.1fs, max_iterations=%s)",
                    self.interval, max_iterations)
        try:
            while not cancel_event.is_set():
                if max_iterations is not None and len(taken) >= max_iterations:
                    break
                sample = self.sampler()
                taken.append(sample)
                self.samples.append(sample)
                if self.on_sample:
                    self.on_sample(sample)

                if max_iterations is not None and len(taken) >= max_iterations:
                    break
                # wait() returns early when the event is set
                if cancel_event.wait(self.interval):
                    break
        except KeyboardInterrupt:
            logger.info("Monitor interrupted by operator")

        logger.info("Monitor loop stopped after %d sample(s)", len(taken))
        return taken


def check_coherence(vms: Iterable[VMDefinition], supervisor,
                    runtimes: Optional[Mapping[str, RuntimeStatus]] = None) -> List[CoherenceIssue]:
    """Compare persisted VM status with what the PID files and process table say.

    Args:
        vms: Definitions to check.
        supervisor: Supervisor used to probe each VM.
        runtimes: Probes already taken, keyed by VM name; missing ones are probed.
    """
    runtimes = runtimes or {}
    issues = []
    for vm in vms:
        runtime = runtimes.get(vm.name) or supervisor.probe(vm)
        if vm.status == VMState.RUNNING and not runtime.is_running:
            issues.append(CoherenceIssue(
                issue_type="vm_state_mismatch",
                resource_id=vm.name,
                details="Registry status is 'running' but no live process was found",
            ))
        elif vm.status != VMState.RUNNING and runtime.is_running:
            issues.append(CoherenceIssue(
                issue_type="orphan_process",
                resource_id=vm.name,
                details=f"Registry status is '{vm.status.value}' but PID {runtime.pid} is alive",
            ))
        elif not runtime.is_running and vm.pid_file and supervisor.read_pid(vm) is not None:
            issues.append(CoherenceIssue(
                issue_type="stale_pid_file",
                resource_id=vm.name,
                details=f"PID file {vm.pid_file} names a process that is gone",
            ))

    for issue in issues:
        logging_config.UnifiedLogger.log_coherence_issue(
            logger, issue.issue_type, issue.resource_id, issue.details
        )
    return issues
