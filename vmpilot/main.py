"""HTTP control surface over the lifecycle orchestrator.

A thin adapter: every route delegates to one orchestrator entry point and
the error taxonomy is mapped onto HTTP status codes in a single handler.
"""
import os
import shutil
import time
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__, errors, logging_config, schemas
from .orchestrator import LifecycleOrchestrator

# Configure unified logging
logging_config.UnifiedLogger.configure()
logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_ORCHESTRATOR)

app = FastAPI(title="vmpilot", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Middleware to log all HTTP requests."""
    start_time = time.time()
    method = request.method
    path = request.url.path

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000
    logging_config.UnifiedLogger.log_request(
        logger, method, path, response.status_code, duration_ms
    )

    return response


def _status_code_for(error: errors.VMPilotError) -> int:
    if isinstance(error, errors.NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, errors.StateConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, (errors.ResourceLimitError, errors.InvalidRequestError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, errors.ProcessError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(errors.VMPilotError)
async def vmpilot_error_handler(request: Request, exc: errors.VMPilotError):
    code = _status_code_for(exc)
    if code >= 500:
        logging_config.UnifiedLogger.log_error(logger, f"{request.method} {request.url.path}", exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


_orchestrator: Optional[LifecycleOrchestrator] = None


def get_orchestrator() -> LifecycleOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = LifecycleOrchestrator()
    return _orchestrator


@app.get("/health", tags=["health"])
def health(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint.

    Checks:
    - Registry document presence and validity
    - Hypervisor binary availability
    - Active recommendation provider
    """
    health_status = {
        "status": "ok",
        "service": "vmpilot",
        "checks": {}
    }

    try:
        orchestrator.store.load()
        health_status["checks"]["registry"] = "ok"
    except errors.ConfigNotFoundError:
        health_status["checks"]["registry"] = "not initialized"
    except errors.ConfigError as e:
        health_status["checks"]["registry"] = f"error: {e}"
        health_status["status"] = "degraded"

    qemu_bin = getattr(orchestrator.supervisor, "qemu_bin", None)
    if qemu_bin and (shutil.which(qemu_bin) or os.path.exists(qemu_bin)):
        health_status["checks"]["qemu"] = "available"
    else:
        health_status["checks"]["qemu"] = "not found"
        health_status["status"] = "degraded"

    try:
        health_status["checks"]["provider"] = orchestrator.engine.resolve_provider().id
    except errors.ProviderConfigError as e:
        health_status["checks"]["provider"] = f"error: {e}"
        health_status["status"] = "degraded"

    if health_status["status"] == "ok":
        return health_status
    return JSONResponse(content=health_status, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@app.get("/providers", response_model=List[schemas.ProviderInfo], tags=["advisor"])
def list_providers(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.providers()


@app.post("/suggestions", response_model=schemas.SuggestionResult, tags=["advisor"])
def get_suggestions(payload: schemas.SuggestionRequest,
                    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_suggestions(payload.query)


# VM endpoints
@app.get("/vms", response_model=List[schemas.VMDefinition], tags=["vms"])
def list_vms(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.list_vms()


@app.post("/vms", response_model=schemas.VMDefinition, status_code=status.HTTP_201_CREATED, tags=["vms"])
def create_vm(payload: schemas.VMCreate, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.create(
        payload.name,
        ram=payload.ram,
        cpu=payload.cpu,
        ssh_port=payload.ssh_port,
        image=payload.image,
        vnc_port=payload.vnc_port,
        max_ram=payload.max_ram,
        max_cpu=payload.max_cpu,
    )


@app.get("/vms/status", response_model=schemas.StatusReport, tags=["vms"])
def all_status(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.status()


@app.get("/vms/{name}/status", response_model=schemas.StatusReport, tags=["vms"])
def vm_status(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.status(name)


@app.delete("/vms/{name}", status_code=status.HTTP_204_NO_CONTENT, tags=["vms"])
def delete_vm(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    orchestrator.delete(name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/vms/{name}/actions/start", response_model=schemas.StartResult,
          status_code=status.HTTP_202_ACCEPTED, tags=["vms"])
def start_vm(name: str, payload: Optional[schemas.StartRequest] = None,
             orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    headless = payload.headless if payload else False
    return orchestrator.start(name, headless=headless)


@app.post("/vms/{name}/actions/stop", response_model=schemas.StopResult, tags=["vms"])
def stop_vm(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.stop(name)


@app.post("/vms/{name}/default", response_model=schemas.VMDefinition, tags=["vms"])
def set_default_vm(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.switch_default(name)


@app.post("/vms/{name}/scale", response_model=schemas.ScaleResult, tags=["resources"])
def scale_vm(name: str, payload: schemas.ScaleRequest,
             orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.scale_resources(name, new_ram=payload.ram, new_cpu=payload.cpu)


@app.get("/vms/{name}/usage", response_model=schemas.UsageSample, tags=["resources"])
def vm_usage(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.monitor_resources(name)[0]


@app.post("/vms/{name}/network/isolate", response_model=schemas.IsolationResult, tags=["network"])
def isolate_vm(name: str, payload: schemas.IsolateRequest,
               orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.isolate_network(name, payload.allow, vpn_enabled=payload.vpn)


@app.get("/vms/{name}/network", response_model=schemas.NetworkStatus, tags=["network"])
def vm_network(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.network_status(name)


@app.post("/vms/{name}/optimize", response_model=schemas.OptimizationResult, tags=["advisor"])
def optimize_vm(name: str, payload: Optional[schemas.OptimizeRequest] = None,
                orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    auto_apply = payload.auto_apply if payload else False
    return orchestrator.optimize_with_recommendations(name, auto_apply=auto_apply)


@app.get("/vms/{name}/predict", response_model=schemas.PredictionResult, tags=["advisor"])
def predict_vm(name: str, days: int = Query(30, ge=1),
               orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.predict_resources(name, horizon_days=days)


@app.get("/vms/{name}/diagnose", response_model=schemas.DiagnosisResult, tags=["advisor"])
def diagnose_vm(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orchestrator.diagnose(name)
