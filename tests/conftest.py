"""Shared fixtures for vmpilot tests."""
import subprocess
import sys
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from vmpilot import main
from vmpilot.config_store import ConfigStore
from vmpilot.errors import ConfigError
from vmpilot.network_manager import NetworkIsolationManager
from vmpilot.orchestrator import LifecycleOrchestrator
from vmpilot.recommendation import RecommendationEngine
from vmpilot.resources import ResourceController
from vmpilot.schemas import Registry, ResourceLimits, VMDefinition, VMState
from vmpilot.supervisor import LocalSupervisor

# Replaces the hypervisor in tests: sh ignores the qemu arguments appended
# after the script and execs a long sleep, so the recorded PID is the sleep.
FAKE_HYPERVISOR = "sh -c 'exec sleep 30'"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path):
    """Keep tests away from the operator's real environment."""
    monkeypatch.setenv("VMPILOT_RUN_DIR", str(tmp_path / "run"))
    monkeypatch.setenv("VMPILOT_AI_PROVIDER", "mock")
    for var in ("VMPILOT_CONFIG", "VMPILOT_AI_MODEL", "OPENAI_API_KEY", "ANTHROPIC_API_KEY",
                "VMPILOT_LAUNCH_PREFIX", "VMPILOT_NETWORK_DRY_RUN"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "vmpilot" / "config.json"


def make_vm(tmp_path: Path, name: str = "dev", ram: int = 2048, cpu: int = 2,
            ssh_port: int = 2222, status: VMState = VMState.STOPPED,
            max_ram: int = 4096, max_cpu: int = 4) -> VMDefinition:
    image = tmp_path / f"{name}.qcow2"
    return VMDefinition(
        name=name,
        ram_mb=ram,
        cpu_cores=cpu,
        ssh_port=ssh_port,
        image_path=str(image),
        status=status,
        pid_file=str(tmp_path / "run" / f"vmpilot-{name}.pid"),
        log_file=str(tmp_path / "logs" / f"{name}.log"),
        resources=ResourceLimits(current_ram=ram, current_cpu=cpu, max_ram=max_ram, max_cpu=max_cpu),
    )


@pytest.fixture
def vm_factory(tmp_path: Path):
    def factory(**kwargs) -> VMDefinition:
        return make_vm(tmp_path, **kwargs)
    return factory


@pytest.fixture
def store(config_path: Path, vm_factory) -> ConfigStore:
    """Registry holding one stopped VM ``dev`` (default) and one ``build``."""
    store = ConfigStore(config_path)
    registry = Registry(
        default_vm="dev",
        vms={
            "dev": vm_factory(name="dev"),
            "build": vm_factory(name="build", ram=1024, cpu=1, ssh_port=2223),
        },
        log_file=str(config_path.parent / "logs" / "vmpilot.log"),
    )
    store.save(registry)
    return store


@pytest.fixture
def supervisor() -> LocalSupervisor:
    return LocalSupervisor(
        qemu_bin="qemu-system-x86_64",
        launch_prefix=FAKE_HYPERVISOR,
        stop_timeout=5,
        resource_controller=ResourceController(cpu_sample_interval=None),
    )


@pytest.fixture
def network() -> NetworkIsolationManager:
    return NetworkIsolationManager(chain="INPUT", iptables_bin="iptables", dry_run=True)


@pytest.fixture
def engine() -> RecommendationEngine:
    return RecommendationEngine(environ={"VMPILOT_AI_PROVIDER": "mock"})


@pytest.fixture
def orchestrator(store, supervisor, network, engine) -> Generator[LifecycleOrchestrator, None, None]:
    orch = LifecycleOrchestrator(
        store=store,
        supervisor=supervisor,
        resources=supervisor.resource_controller,
        network=network,
        engine=engine,
        monitor_interval=0.01,
    )
    yield orch
    # never leave fake hypervisors behind
    try:
        vms = list(store.load().vms.values())
    except ConfigError:
        vms = []
    for vm in vms:
        try:
            supervisor.stop(vm)
        except Exception:
            pass


@pytest.fixture
def child_process() -> Generator[subprocess.Popen, None, None]:
    """A live, short-lived child process whose PID can be written to PID files."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait()


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def test_client(orchestrator) -> Generator[TestClient, None, None]:
    """FastAPI test client wired to the test orchestrator."""
    main.app.dependency_overrides[main.get_orchestrator] = lambda: orchestrator
    client = TestClient(main.app)
    yield client
    main.app.dependency_overrides.clear()
