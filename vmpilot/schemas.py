from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_MAX_RAM = 4096
DEFAULT_MAX_CPU = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VMState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    SUSPENDED = "suspended"


class ResourceLimits(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_ram: int = Field(0, ge=0, alias="currentRAM")
    current_cpu: int = Field(0, ge=0, alias="currentCPU")
    max_ram: int = Field(DEFAULT_MAX_RAM, ge=1, alias="maxRAM")
    max_cpu: int = Field(DEFAULT_MAX_CPU, ge=1, alias="maxCPU")
    disk_usage: int = Field(0, ge=0, alias="diskUsage")

    @model_validator(mode="after")
    def _current_within_max(self):
        if self.current_ram > self.max_ram:
            raise ValueError(f"currentRAM {self.current_ram} exceeds maxRAM {self.max_ram}")
        if self.current_cpu > self.max_cpu:
            raise ValueError(f"currentCPU {self.current_cpu} exceeds maxCPU {self.max_cpu}")
        return self


class VMDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    ram_mb: int = Field(..., gt=0, alias="ram")
    cpu_cores: int = Field(..., gt=0, alias="cpu")
    ssh_port: int = Field(..., ge=1, le=65535, alias="sshPort")
    vnc_port: Optional[int] = Field(None, ge=1, le=65535, alias="vncPort")
    image_path: str = Field(..., min_length=1, alias="image")
    status: VMState = VMState.STOPPED
    pid_file: str = Field("", alias="pidFile")
    log_file: str = Field("", alias="logFile")
    created_at: datetime = Field(default_factory=_utcnow, alias="created")
    resources: ResourceLimits = Field(default_factory=ResourceLimits)

    @field_validator("status", mode="before")
    @classmethod
    def _blank_status_is_stopped(cls, value):
        # hand-edited documents often leave the status empty
        if value is None or value == "":
            return VMState.STOPPED
        return value

    @field_validator("vnc_port", mode="before")
    @classmethod
    def _blank_vnc_port(cls, value):
        if value == "" or value == 0:
            return None
        return value

    @model_validator(mode="after")
    def _allocation_within_max(self):
        if self.ram_mb > self.resources.max_ram:
            raise ValueError(f"ram {self.ram_mb} exceeds maxRAM {self.resources.max_ram}")
        if self.cpu_cores > self.resources.max_cpu:
            raise ValueError(f"cpu {self.cpu_cores} exceeds maxCPU {self.resources.max_cpu}")
        return self

    @property
    def is_marked_running(self) -> bool:
        return self.status == VMState.RUNNING


class Registry(BaseModel):
    """Root persisted document: every declared VM plus the default selection."""
    model_config = ConfigDict(populate_by_name=True)

    default_vm: str = Field("", alias="defaultVM")
    vms: Dict[str, VMDefinition] = Field(default_factory=dict)
    log_file: str = Field("", alias="logFile")

    @model_validator(mode="after")
    def _check_invariants(self):
        for key, vm in self.vms.items():
            if key != vm.name:
                raise ValueError(f"VM key '{key}' does not match its name '{vm.name}'")
        if self.default_vm and self.default_vm not in self.vms:
            raise ValueError(f"defaultVM '{self.default_vm}' is not a declared VM")
        seen_ports: Dict[int, str] = {}
        for vm in self.vms.values():
            if not vm.is_marked_running:
                continue
            if vm.ssh_port in seen_ports:
                raise ValueError(
                    f"sshPort {vm.ssh_port} is used by running VMs "
                    f"'{seen_ports[vm.ssh_port]}' and '{vm.name}'"
                )
            seen_ports[vm.ssh_port] = vm.name
        return self

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class RuntimeStatus(BaseModel):
    """Live view of a VM process. ``None`` usage figures mean "could not measure"."""
    is_running: bool = False
    pid: Optional[int] = None
    cpu_usage_percent: Optional[float] = None
    mem_usage_mb: Optional[float] = None
    uptime: Optional[str] = None


class ResourceUsage(BaseModel):
    mem_mb: Optional[float] = None
    cpu_percent: Optional[float] = None


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ConversationMessage(BaseModel):
    role: Role
    content: str


class SuggestionResult(BaseModel):
    suggestions: List[str] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    provider: str = "offline"


class RecommendationProvider(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    base_endpoint: str = ""
    supported_models: Tuple[str, ...] = ()
    credential_env_var: str = ""
    description: str = ""
    timeout: float = 30.0
    local: bool = False

    @property
    def requires_credential(self) -> bool:
        return bool(self.credential_env_var)

    @property
    def default_model(self) -> Optional[str]:
        return self.supported_models[0] if self.supported_models else None


class ProviderInfo(BaseModel):
    id: str
    display_name: str
    description: str
    credential_present: bool
    active: bool


class CoherenceIssue(BaseModel):
    """A detected mismatch between the registry and the live process table."""
    issue_type: str  # "vm_state_mismatch", "orphan_process", "stale_pid_file"
    resource_id: str
    details: str


class VMStatusReport(BaseModel):
    name: str
    definition: VMDefinition
    runtime: RuntimeStatus
    is_default: bool = False
    issues: List[CoherenceIssue] = Field(default_factory=list)


class StatusReport(BaseModel):
    default_vm: str
    vms: List[VMStatusReport] = Field(default_factory=list)


class StartResult(BaseModel):
    vm_name: str
    pid: int
    headless: bool = False


class StopResult(BaseModel):
    vm_name: str
    was_running: bool


class ScaleResult(BaseModel):
    definition: VMDefinition
    changes: List[str] = Field(default_factory=list)
    restart_required: bool = False


class UsageSample(BaseModel):
    vm_name: str
    timestamp: datetime = Field(default_factory=_utcnow)
    runtime: RuntimeStatus
    disk_usage_bytes: Optional[int] = None


class IsolationResult(BaseModel):
    vm_name: str
    mode: str
    forwarded_port: int
    vpn_enabled: bool = False
    applied_rules: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class NetworkStatus(BaseModel):
    vm_name: str
    mode: str
    forwarded_port: int
    vpn_enabled: bool = False
    active_rules: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class OptimizationResult(BaseModel):
    vm_name: str
    recommendations: SuggestionResult
    applied: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    restart_required: bool = False
    definition: VMDefinition


class ResourcePrediction(BaseModel):
    horizon_days: int
    current_ram_mb: int
    predicted_ram_mb: int
    current_cpu: int
    predicted_cpu: int
    upgrade_recommended: bool


class PredictionResult(BaseModel):
    vm_name: str
    prediction: ResourcePrediction
    recommendations: SuggestionResult


class DiagnosisResult(BaseModel):
    vm_name: str
    diagnostic_info: str
    runtime: RuntimeStatus
    issues: List[CoherenceIssue] = Field(default_factory=list)
    recommendations: SuggestionResult


# Request bodies for the HTTP control surface

class VMCreate(BaseModel):
    name: str = Field(..., min_length=1)
    ram: int = Field(..., ge=1)
    cpu: int = Field(..., ge=1)
    ssh_port: int = Field(..., ge=1, le=65535)
    image: str = Field(..., min_length=1)
    vnc_port: Optional[int] = None
    max_ram: Optional[int] = None
    max_cpu: Optional[int] = None


class StartRequest(BaseModel):
    headless: bool = False


class ScaleRequest(BaseModel):
    ram: Optional[int] = None
    cpu: Optional[int] = None


class IsolateRequest(BaseModel):
    allow: List[str] = Field(default_factory=list)
    vpn: bool = False


class OptimizeRequest(BaseModel):
    auto_apply: bool = False


class SuggestionRequest(BaseModel):
    query: str = Field(..., min_length=1)
