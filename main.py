import asyncio
import json
import threading
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config.settings import API_HOST, API_PORT, METRICS_ENABLED
from core.errors import (
    ControlPlaneError,
    InvalidTransitionError,
    OrchestrationBusyError,
    RecordNotFoundError,
    ValidationError,
)
from core.image_provisioner import ImageProvisioner
from core.inventory import InventoryStore
from core.logger import log_event
from core.metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    init_static_metrics,
    start_background_collectors,
)
from core.orchestrator import ProvisioningOrchestrator
from core.validator import RequestValidator
from schemas.vm_schema import ProvisionRequest, ValidationErrorSchema

_orchestrator: Optional[ProvisioningOrchestrator] = None
_orchestrator_lock = threading.Lock()


def build_orchestrator() -> ProvisioningOrchestrator:
    # imported here so the API and tests load without libvirt-python
    from core.vm_controller import LibvirtControlClient

    orchestrator = ProvisioningOrchestrator(
        store=InventoryStore(),
        control=LibvirtControlClient(),
        provisioner=ImageProvisioner(),
        validator=RequestValidator(),
    )
    recovered = orchestrator.recover()
    if recovered:
        log_event(f"[app] Recovered interrupted records: {recovered}")
    return orchestrator


def get_orchestrator() -> ProvisioningOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
        return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    if METRICS_ENABLED:
        init_static_metrics()
        start_background_collectors(lambda: get_orchestrator().list())
        log_event("[app] Metrics enabled and collectors started")
    yield
    if _orchestrator is not None:
        _orchestrator.shutdown(wait=False)
        log_event("[app] Orchestrator shut down")


app = FastAPI(
    title="VM Provisioning API",
    description=(
        "Declarative VM provisioning on top of libvirt.\n\n"
        "Features:\n"
        "- Validated, idempotent VM creation requests\n"
        "- qcow2 copy-on-write or fresh sparse disks\n"
        "- Retry with backoff, cancellation and rollback\n"
        "- Durable inventory of VM lifecycle state\n"
        "- Prometheus/Grafana metrics"
    ),
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not METRICS_ENABLED or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


# -----------------------------
# Error mapping
# -----------------------------
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    # report the first problem in the same {field, reason} shape
    errors = exc.errors()
    first = errors[0] if errors else {"loc": (), "msg": "invalid request"}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    return JSONResponse(
        status_code=422,
        content={"field": ".".join(loc) or "body", "reason": first.get("msg", "invalid")},
    )


@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
@app.exception_handler(OrchestrationBusyError)
async def conflict_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ControlPlaneError)
async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
    if exc.not_found:
        return JSONResponse(status_code=404, content={"detail": str(exc)})
    log_event(f"[api] Control plane error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# -----------------------------
# Routes
# -----------------------------
@app.get("/", tags=["System"])
def root():
    return {
        "message": "VM Provisioning API is running",
        "version": app.version,
    }


@app.post(
    "/vms",
    status_code=202,
    tags=["VM Management"],
    responses={422: {"model": ValidationErrorSchema}},
)
def submit_vm(
    payload: ProvisionRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    record = orchestrator.submit(payload)
    return record.summary()


@app.get("/vms", tags=["VM Management"])
def list_vms(orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    return {"vms": [r.model_dump(mode="json", by_alias=True) for r in orchestrator.list()]}


@app.get("/vms/{name}", tags=["VM Management"])
def get_vm(name: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get(name).model_dump(mode="json", by_alias=True)


@app.get("/vms/{name}/domain", tags=["VM Management"])
def get_vm_domain(name: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    status = orchestrator.domain_status(name)
    return {"name": name, "domainStatus": status.value}


@app.post("/vms/{name}/stop", status_code=202, tags=["VM Lifecycle"])
def stop_vm(
    name: str,
    graceful: bool = True,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.stop(name, graceful=graceful).summary()


@app.post("/vms/{name}/start", status_code=202, tags=["VM Lifecycle"])
def start_vm(name: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    return orchestrator.start(name).summary()


@app.post("/vms/{name}/cancel", status_code=202, tags=["VM Lifecycle"])
def cancel_vm(name: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    return orchestrator.cancel(name).summary()


@app.delete("/vms/{name}", status_code=202, tags=["VM Lifecycle"])
def delete_vm(name: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    return orchestrator.delete(name).summary()


@app.get("/metrics", tags=["Monitoring"])
def metrics():
    if not METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.websocket("/ws/vm/{name}/status")
async def vm_status_stream(
    websocket: WebSocket,
    name: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    await websocket.accept()
    log_event(f"[ws-status] Client connected for VM {name}")
    try:
        while True:
            record = orchestrator.store.get(name)
            if record is None:
                await websocket.send_text(json.dumps({"name": name, "error": "not found"}))
                await websocket.close()
                return
            await websocket.send_text(record.model_dump_json(by_alias=True))
            await asyncio.sleep(1.0)
    except WebSocketDisconnect:
        log_event(f"[ws-status] Client disconnected for VM {name}")
    except Exception as e:  # noqa: BLE001
        log_event(f"[ws-status] Error for VM {name}: {e}")
        await websocket.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
