"""Lifecycle orchestrator: the command surface consumed by front ends.

Each entry point loads the registry, delegates to the supervisor, resource
controller, network manager or recommendation engine, and writes the registry
back exactly once after every sub-operation of the intent has succeeded. A
failing intent therefore never leaves a partially updated registry behind.

``vm_name=None`` always means the registry's default VM.
"""
from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from pydantic import ValidationError

from . import logging_config
from .config_store import ConfigStore, default_pid_path
from .errors import (
    AlreadyRunningError,
    ConfigError,
    ConfigNotFoundError,
    InvalidRequestError,
    NotFoundError,
    NotRunningError,
    ProcessError,
    ResourceLimitError,
    StateConflictError,
)
from .monitor import DEFAULT_INTERVAL, ResourceMonitor, check_coherence
from .network_manager import NetworkIsolationManager
from .recommendation import RecommendationEngine
from .resources import ResourceController
from .schemas import (
    DEFAULT_MAX_CPU,
    DEFAULT_MAX_RAM,
    DiagnosisResult,
    IsolationResult,
    NetworkStatus,
    OptimizationResult,
    PredictionResult,
    ProviderInfo,
    Registry,
    ResourceLimits,
    RuntimeStatus,
    ScaleResult,
    StartResult,
    StatusReport,
    StopResult,
    SuggestionResult,
    UsageSample,
    VMDefinition,
    VMState,
    VMStatusReport,
)
from .supervisor import LocalSupervisor, SupervisorInterface

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_ORCHESTRATOR)

# auto-apply rules for optimize: (phrase, current value, proposed value)
RAM_UPGRADE_RULE = ("increase ram", 2048, 4096)
CPU_UPGRADE_RULE = ("add cpu core", 2, 4)


class LifecycleOrchestrator:
    """Coordinates the registry with process, resource, network and advisor components."""

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        supervisor: Optional[SupervisorInterface] = None,
        resources: Optional[ResourceController] = None,
        network: Optional[NetworkIsolationManager] = None,
        engine: Optional[RecommendationEngine] = None,
        monitor_interval: Optional[float] = None,
    ):
        self.store = store or ConfigStore()
        self.resources = resources or ResourceController()
        self.supervisor = supervisor or LocalSupervisor(resource_controller=self.resources)
        self.network = network or NetworkIsolationManager()
        self.engine = engine or RecommendationEngine()
        self.monitor_interval = float(
            monitor_interval if monitor_interval is not None
            else os.environ.get("VMPILOT_MONITOR_INTERVAL", str(DEFAULT_INTERVAL))
        )
        logger.info("LifecycleOrchestrator initialized: registry=%s", self.store.path)

    # registry helpers

    def _load(self) -> Registry:
        return self.store.load()

    @staticmethod
    def _resolve(registry: Registry, vm_name: Optional[str]) -> VMDefinition:
        name = vm_name or registry.default_vm
        if not name:
            raise NotFoundError(None, "No VM name given and no default VM configured")
        vm = registry.vms.get(name)
        if vm is None:
            raise NotFoundError(name)
        return vm

    def _commit(self, registry: Registry, operation: str) -> None:
        try:
            self.store.save(registry)
        except ConfigError as e:
            logging_config.UnifiedLogger.log_error(logger, operation, e, {"registry": str(self.store.path)})
            raise

    # lifecycle

    def start(self, vm_name: Optional[str] = None, headless: bool = False) -> StartResult:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        runtime = self.supervisor.probe(vm)
        if runtime.is_running:
            raise AlreadyRunningError(f"VM '{vm.name}' is already running (PID {runtime.pid})")

        for other in registry.vms.values():
            if other.name == vm.name or other.ssh_port != vm.ssh_port:
                continue
            if self.supervisor.probe(other).is_running:
                raise StateConflictError(
                    f"SSH port {vm.ssh_port} is already used by running VM '{other.name}'"
                )
            if other.status == VMState.RUNNING:
                # stale claim on the port; corrected in the same write
                registry.vms[other.name] = other.model_copy(update={"status": VMState.STOPPED})

        pid = self.supervisor.start(vm, headless=headless)
        registry.vms[vm.name] = vm.model_copy(update={"status": VMState.RUNNING})
        try:
            self._commit(registry, f"start {vm.name}")
        except ConfigError:
            # the registry still says stopped; do not leave the process behind
            try:
                self.supervisor.stop(vm)
            except (ProcessError, NotRunningError) as e:
                logger.warning("Could not stop VM %s after failed registry write: %s", vm.name, e)
            raise
        logger.info("VM %s started (PID %d, headless=%s)", vm.name, pid, headless)
        return StartResult(vm_name=vm.name, pid=pid, headless=headless)

    def stop(self, vm_name: Optional[str] = None) -> StopResult:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        was_running = self.supervisor.probe(vm).is_running
        try:
            self.supervisor.stop(vm)
        except NotRunningError:
            logger.info("VM %s is not running; nothing to stop", vm.name)
            was_running = False

        if vm.status != VMState.STOPPED:
            registry.vms[vm.name] = vm.model_copy(update={"status": VMState.STOPPED})
            self._commit(registry, f"stop {vm.name}")
        return StopResult(vm_name=vm.name, was_running=was_running)

    def status(self, vm_name: Optional[str] = None,
               as_json: bool = False) -> Union[StatusReport, str]:
        """Report persisted definitions alongside live probes. Never writes."""
        registry = self._load()
        if vm_name:
            vms = [self._resolve(registry, vm_name)]
        else:
            vms = sorted(registry.vms.values(), key=lambda v: v.name)

        runtimes = {vm.name: self.supervisor.probe(vm) for vm in vms}
        issues = check_coherence(vms, self.supervisor, runtimes)
        reports = [
            VMStatusReport(
                name=vm.name,
                definition=vm,
                runtime=runtimes[vm.name],
                is_default=vm.name == registry.default_vm,
                issues=[i for i in issues if i.resource_id == vm.name],
            )
            for vm in vms
        ]
        report = StatusReport(default_vm=registry.default_vm, vms=reports)
        if as_json:
            return report.model_dump_json(indent=2)
        return report

    def list_vms(self) -> List[VMDefinition]:
        registry = self._load()
        return sorted(registry.vms.values(), key=lambda v: v.name)

    # registry mutations

    def create(self, vm_name: str, ram: int, cpu: int, ssh_port: int, image: str,
               vnc_port: Optional[int] = None, max_ram: Optional[int] = None,
               max_cpu: Optional[int] = None) -> VMDefinition:
        """Declare a new VM. The first VM created becomes the default."""
        try:
            registry = self._load()
        except ConfigNotFoundError:
            logger.info("No registry at %s; starting a new one", self.store.path)
            registry = Registry()

        if not vm_name:
            raise InvalidRequestError("VM name must not be empty")
        if vm_name in registry.vms:
            raise StateConflictError(f"VM '{vm_name}' already exists")

        max_ram = max_ram if max_ram is not None else max(DEFAULT_MAX_RAM, ram)
        max_cpu = max_cpu if max_cpu is not None else max(DEFAULT_MAX_CPU, cpu)
        if ram > max_ram:
            raise ResourceLimitError(f"RAM {ram} MB exceeds maximum {max_ram} MB")
        if cpu > max_cpu:
            raise ResourceLimitError(f"CPU {cpu} cores exceeds maximum {max_cpu}")

        for other in registry.vms.values():
            if other.ssh_port == ssh_port:
                logger.warning("VM %s shares SSH port %d with VM %s; they cannot run together",
                               vm_name, ssh_port, other.name)

        try:
            vm = VMDefinition(
                name=vm_name,
                ram_mb=ram,
                cpu_cores=cpu,
                ssh_port=ssh_port,
                vnc_port=vnc_port,
                image_path=image,
                status=VMState.STOPPED,
                pid_file=str(default_pid_path(vm_name)),
                log_file=str(self.store.config_dir / "logs" / f"{vm_name}.log"),
                resources=ResourceLimits(current_ram=ram, current_cpu=cpu, max_ram=max_ram, max_cpu=max_cpu),
            )
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid VM definition for '{vm_name}': {e}")

        registry.vms[vm_name] = vm
        if not registry.default_vm:
            registry.default_vm = vm_name
        self._commit(registry, f"create {vm_name}")
        logger.info("Created VM %s (%d MB, %d cores, ssh %d)", vm_name, ram, cpu, ssh_port)
        return vm

    def delete(self, vm_name: Optional[str] = None) -> VMDefinition:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        runtime = self.supervisor.probe(vm)
        if runtime.is_running:
            raise StateConflictError(f"VM '{vm.name}' is running (PID {runtime.pid}); stop it first")

        del registry.vms[vm.name]
        if registry.default_vm == vm.name:
            registry.default_vm = ""
        self._commit(registry, f"delete {vm.name}")

        if vm.pid_file:
            Path(os.path.expanduser(vm.pid_file)).unlink(missing_ok=True)
        logger.info("Deleted VM %s", vm.name)
        return vm

    def switch_default(self, vm_name: str) -> VMDefinition:
        registry = self._load()
        if not vm_name:
            raise InvalidRequestError("VM name must not be empty")
        vm = self._resolve(registry, vm_name)
        registry.default_vm = vm.name
        self._commit(registry, f"switch default to {vm.name}")
        logger.info("Default VM is now %s", vm.name)
        return vm

    def scale_resources(self, vm_name: Optional[str] = None, new_ram: Optional[int] = None,
                        new_cpu: Optional[int] = None) -> ScaleResult:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        scaled = self.resources.scale(vm, new_ram=new_ram, new_cpu=new_cpu)
        registry.vms[vm.name] = scaled
        self._commit(registry, f"scale {vm.name}")
        return ScaleResult(
            definition=scaled,
            changes=_describe_changes(vm, scaled),
            restart_required=self.supervisor.probe(scaled).is_running,
        )

    # monitoring and network

    def _sample(self, vm: VMDefinition, runtime: Optional[RuntimeStatus] = None) -> UsageSample:
        return UsageSample(
            vm_name=vm.name,
            runtime=runtime or self.supervisor.probe(vm),
            disk_usage_bytes=self.resources.disk_usage(vm),
        )

    def monitor_resources(
        self,
        vm_name: Optional[str] = None,
        continuous: bool = False,
        interval: Optional[float] = None,
        max_iterations: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        on_sample: Optional[Callable[[UsageSample], None]] = None,
    ) -> List[UsageSample]:
        """Sample live usage once, or repeatedly until cancelled.

        Raises:
            NotRunningError: The VM has no live process.
        """
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        runtime = self.supervisor.probe(vm)
        if not runtime.is_running:
            raise NotRunningError(f"VM '{vm.name}' is not running")

        if not continuous:
            sample = self._sample(vm, runtime)
            if on_sample:
                on_sample(sample)
            return [sample]

        monitor = ResourceMonitor(
            lambda: self._sample(vm),
            interval=interval if interval is not None else self.monitor_interval,
            on_sample=on_sample,
        )
        return monitor.run(max_iterations=max_iterations, cancel_event=cancel_event)

    def isolate_network(self, vm_name: Optional[str] = None, allow_list: Optional[List[str]] = None,
                        vpn_enabled: bool = False) -> IsolationResult:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        if not self.supervisor.probe(vm).is_running:
            raise NotRunningError(f"VM '{vm.name}' must be running to configure network isolation")
        return self.network.isolate(vm, allow_list or [], vpn_enabled=vpn_enabled)

    def network_status(self, vm_name: Optional[str] = None) -> NetworkStatus:
        registry = self._load()
        vm = self._resolve(registry, vm_name)
        return self.network.status(vm)

    # recommendations

    def optimize_with_recommendations(self, vm_name: Optional[str] = None,
                                      auto_apply: bool = False) -> OptimizationResult:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        context = (
            f"VM '{vm.name}' is currently allocated {vm.ram_mb}MB RAM and "
            f"{vm.cpu_cores} CPU cores (limits {vm.resources.max_ram}MB / "
            f"{vm.resources.max_cpu} cores)."
        )
        recommendations = self.engine.suggest(
            "Optimize the resource allocation of this VM and suggest resource changes.",
            context=context,
        )
        result = OptimizationResult(vm_name=vm.name, recommendations=recommendations, definition=vm)
        if not auto_apply:
            return result

        new_ram, new_cpu, warnings = _auto_apply_proposals(vm, recommendations)
        result.warnings.extend(warnings)
        if new_ram is None and new_cpu is None:
            logger.info("No applicable optimization for VM %s", vm.name)
            return result

        scaled = self.resources.scale(vm, new_ram=new_ram, new_cpu=new_cpu)
        registry.vms[vm.name] = scaled
        self._commit(registry, f"optimize {vm.name}")

        result.applied = _describe_changes(vm, scaled)
        result.definition = scaled
        result.restart_required = self.supervisor.probe(scaled).is_running
        return result

    def predict_resources(self, vm_name: Optional[str] = None, horizon_days: int = 30) -> PredictionResult:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        prediction = self.resources.predict(vm, horizon_days)
        recommendations = self.engine.suggest(
            f"Predict the resource needs of this VM over the next {horizon_days} days.",
            context=f"VM '{vm.name}' has {vm.ram_mb}MB RAM and {vm.cpu_cores} CPU cores.",
        )
        if prediction.upgrade_recommended:
            recommendations.warnings.append(
                f"Predicted RAM {prediction.predicted_ram_mb}MB is more than twice the "
                f"current {vm.ram_mb}MB; plan an upgrade"
            )
        return PredictionResult(vm_name=vm.name, prediction=prediction, recommendations=recommendations)

    def diagnose(self, vm_name: Optional[str] = None) -> DiagnosisResult:
        registry = self._load()
        vm = self._resolve(registry, vm_name)

        runtime = self.supervisor.probe(vm)
        issues = check_coherence([vm], self.supervisor, {vm.name: runtime})
        diagnostic_info = _diagnostic_text(vm, runtime)
        recommendations = self.engine.suggest("Diagnose issues with this VM.", context=diagnostic_info)
        return DiagnosisResult(
            vm_name=vm.name,
            diagnostic_info=diagnostic_info,
            runtime=runtime,
            issues=issues,
            recommendations=recommendations,
        )

    def get_suggestions(self, query: str) -> SuggestionResult:
        if not query or not query.strip():
            raise InvalidRequestError("Query must not be empty")
        return self.engine.suggest(query.strip())

    def providers(self) -> List[ProviderInfo]:
        return self.engine.provider_info()

    # registry file

    def init_config(self, overwrite: bool = False) -> Registry:
        return self.store.init_default(overwrite=overwrite)

    def validate_config(self) -> Registry:
        return self.store.validate()


def _describe_changes(before: VMDefinition, after: VMDefinition) -> List[str]:
    changes = []
    if before.ram_mb != after.ram_mb:
        changes.append(f"RAM {before.ram_mb}MB -> {after.ram_mb}MB")
    if before.cpu_cores != after.cpu_cores:
        changes.append(f"CPU {before.cpu_cores} -> {after.cpu_cores} cores")
    return changes


def _auto_apply_proposals(vm: VMDefinition,
                          recommendations: SuggestionResult) -> Tuple[Optional[int], Optional[int], List[str]]:
    """Map suggestion text onto concrete scale values.

    Only the fixed phrase rules are recognized; a proposal above the VM's
    maximum is dropped with a warning rather than clamped.
    """
    text = "\n".join(recommendations.suggestions).lower()
    warnings = []

    new_ram = None
    phrase, tier, target = RAM_UPGRADE_RULE
    if phrase in text and vm.ram_mb == tier:
        if target > vm.resources.max_ram:
            warnings.append(
                f"Skipped RAM increase to {target}MB: exceeds maximum {vm.resources.max_ram}MB"
            )
        else:
            new_ram = target

    new_cpu = None
    phrase, tier, target = CPU_UPGRADE_RULE
    if phrase in text and vm.cpu_cores == tier:
        if target > vm.resources.max_cpu:
            warnings.append(
                f"Skipped CPU increase to {target} cores: exceeds maximum {vm.resources.max_cpu}"
            )
        else:
            new_cpu = target

    return new_ram, new_cpu, warnings


def _diagnostic_text(vm: VMDefinition, runtime: RuntimeStatus) -> str:
    lines = [
        f"VM: {vm.name}",
        f"Status: {vm.status.value}",
        f"RAM: {vm.ram_mb}MB",
        f"CPU: {vm.cpu_cores} cores",
        f"Running: {'yes' if runtime.is_running else 'no'}",
    ]
    if runtime.pid:
        lines.append(f"PID: {runtime.pid}")
    if runtime.mem_usage_mb is not None:
        lines.append(f"Memory: {runtime.mem_usage_mb:.1f}MB")
    if runtime.cpu_usage_percent is not None:
        lines.append(f"CPU usage: {runtime.cpu_usage_percent:.1f}%")
    if runtime.uptime:
        lines.append(f"Uptime: {runtime.uptime}")
    return "\n".join(lines)
