"""Registry persistence.

The registry is a single human-editable JSON document. Loading validates the
whole document before anything is handed back to callers, and saving rewrites
the whole document through a temporary file so a failed write leaves the
previous version in place. Concurrent writers are not coordinated: the last
one to save wins.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from . import logging_config
from .errors import (
    ConfigNotFoundError,
    ConfigParseError,
    ConfigValidationError,
    ConfigWriteError,
    StateConflictError,
)
from .schemas import Registry, ResourceLimits, VMDefinition, VMState

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_ORCHESTRATOR)

DEFAULT_CONFIG_PATH = "~/.vmpilot/config.json"

PathLike = Union[str, Path]


def default_config_path() -> Path:
    return Path(os.environ.get("VMPILOT_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "<document>"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


def load_registry(path: PathLike) -> Registry:
    """Load and validate the registry document at ``path``.

    Raises:
        ConfigNotFoundError: The file does not exist.
        ConfigParseError: The file is not a JSON object.
        ConfigValidationError: A required field is missing or a registry rule fails.
    """
    path = Path(path).expanduser()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigNotFoundError(f"Registry not found: {path}")
    except OSError as e:
        raise ConfigParseError(f"Cannot read registry {path}: {e}")

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigParseError(f"Registry {path} is not valid JSON: {e}")
    if not isinstance(document, dict):
        raise ConfigParseError(f"Registry {path} must contain a JSON object")

    try:
        registry = Registry.model_validate(document)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid registry {path}: {_format_validation_error(e)}")

    logger.debug("Loaded registry %s (%d VMs)", path, len(registry.vms))
    return registry


def save_registry(path: PathLike, registry: Registry) -> None:
    """Validate and atomically rewrite the registry document at ``path``."""
    path = Path(path).expanduser()
    try:
        # re-validate: callers may have mutated fields after loading
        registry = Registry.model_validate(registry.to_document())
    except ValidationError as e:
        raise ConfigValidationError(f"Refusing to save invalid registry: {_format_validation_error(e)}")

    data = json.dumps(registry.to_document(), indent=2) + "\n"
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise ConfigWriteError(f"Failed to write registry {path}: {e}")
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)

    logger.debug("Saved registry %s (%d VMs)", path, len(registry.vms))


class ConfigStore:
    """Registry store bound to one document path."""

    def __init__(self, path: Optional[PathLike] = None):
        self.path = Path(path).expanduser() if path else default_config_path()

    @property
    def config_dir(self) -> Path:
        return self.path.parent

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Registry:
        return load_registry(self.path)

    def save(self, registry: Registry) -> None:
        save_registry(self.path, registry)

    def validate(self) -> Registry:
        """Load the document purely to confirm it is valid."""
        registry = self.load()
        logger.info("Registry %s is valid (%d VMs)", self.path, len(registry.vms))
        return registry

    def init_default(self, overwrite: bool = False) -> Registry:
        """Write a starter registry holding a single ``default`` VM."""
        if self.exists() and not overwrite:
            raise StateConflictError(f"Registry already exists: {self.path}")

        logs_dir = self.config_dir / "logs"
        default_vm = VMDefinition(
            name="default",
            ram_mb=2048,
            cpu_cores=2,
            ssh_port=2222,
            image_path="~/alpine-vm.qcow2",
            status=VMState.STOPPED,
            pid_file=str(default_pid_path("default")),
            log_file=str(logs_dir / "default.log"),
            resources=ResourceLimits(current_ram=2048, current_cpu=2, max_ram=4096, max_cpu=4),
        )
        registry = Registry(
            default_vm="default",
            vms={"default": default_vm},
            log_file=str(logs_dir / "vmpilot.log"),
        )
        self.save(registry)
        logger.info("Initialized registry at %s", self.path)
        return registry


def default_pid_path(vm_name: str) -> Path:
    run_dir = Path(os.environ.get("VMPILOT_RUN_DIR", tempfile.gettempdir())).expanduser()
    return run_dir / f"vmpilot-{vm_name}.pid"
