from fastapi import FastAPI, HTTPException, Depends, Header, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.background import BackgroundTask
from models import ContainerConfig, ImagePullRequest, VolumeCreateRequest
from orchestrator import ContainerOrchestrator
from docker_service import get_orchestrator
from utils import (
    logger,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    log_request,
    get_metrics,
    health_check,
    DockmasterException,
)
from dotenv import load_dotenv
import os
import time

from typing import Optional
from prometheus_client import CONTENT_TYPE_LATEST

load_dotenv()

# Initialize rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false",
)

app = FastAPI(
    title="Dockmaster",
    description="Container lifecycle orchestration API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Authentication dependency
async def verify_orchestrator_token(authorization: Optional[str] = Header(None)):
    """Verify that the request carries the orchestrator bearer token"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    expected_token = os.getenv("ORCHESTRATOR_TOKEN", "default-secret-token")
    if authorization != f"Bearer {expected_token}":
        raise HTTPException(status_code=403, detail="Invalid orchestrator token")

    return True


# Request/Response middleware for logging and metrics
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    response_time = time.time() - start_time
    log_request(request, response_time, response.status_code)

    REQUEST_COUNT.labels(
        method=request.method, endpoint=request.url.path, status=response.status_code
    ).inc()
    REQUEST_LATENCY.observe(response_time)

    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.error("Validation error", errors=errors)
    return JSONResponse(
        status_code=422,
        content={"detail": "Validation error", "errors": errors},
    )


@app.exception_handler(DockmasterException)
async def dockmaster_exception_handler(request: Request, exc: DockmasterException):
    logger.error(
        "Orchestrator exception",
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unexpected error", error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


# Containers


@app.post("/containers", status_code=201)
@limiter.limit("10/minute")
def create_container(
    config: ContainerConfig,
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    """Create a container from a spec; it is not started"""
    logger.info("Creating container", config=config.model_dump())
    handle = orchestrator.create_container(config.to_spec())
    return {"id": handle.id}


@app.get("/containers")
@limiter.limit("20/minute")
def list_all_containers(
    request: Request,
    all: bool = False,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    """List container ids; stopped containers only with ?all=true"""
    handles = orchestrator.list_containers(include_stopped=all)
    return [handle.id for handle in handles]


@app.get("/containers/{container_id}/status")
@limiter.limit("30/minute")
def get_status(
    container_id: str,
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    state = orchestrator.get_container_status(container_id)
    return {"id": container_id, "state": state.value}


def _control_route(action: str):
    def endpoint(
        container_id: str,
        request: Request,
        _: bool = Depends(verify_orchestrator_token),
        orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
    ):
        logger.info("Container control", action=action, container_id=container_id)
        getattr(orchestrator, f"{action}_container")(container_id)
        return {"id": container_id, "action": action}

    endpoint.__name__ = f"{action}_container"
    endpoint.__doc__ = f"{action.capitalize()} an existing container"
    app.post(f"/containers/{{container_id}}/{action}")(
        limiter.limit("10/minute")(endpoint)
    )


_control_route("start")
_control_route("stop")
_control_route("restart")
_control_route("pause")
_control_route("unpause")


@app.delete("/containers/{container_id}")
@limiter.limit("10/minute")
def remove_container(
    container_id: str,
    request: Request,
    force: bool = False,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    orchestrator.remove_container(container_id, force=force)
    return {"id": container_id, "removed": True}


@app.get("/containers/{container_id}/logs")
@limiter.limit("30/minute")
def get_container_logs(
    container_id: str,
    request: Request,
    follow: bool = False,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    """Stream container output; with ?follow=true the response stays open"""
    logs = orchestrator.get_container_logs(container_id, follow=follow)

    def body():
        with logs:
            yield from logs

    # The background task covers clients that disconnect before the body starts
    return StreamingResponse(
        body(),
        media_type="application/octet-stream",
        background=BackgroundTask(logs.close),
    )


@app.get("/containers/{container_id}/stats")
@limiter.limit("30/minute")
def get_container_stats(
    container_id: str,
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    snapshot = orchestrator.get_container_stats(container_id)
    return snapshot.model_dump(exclude={"raw"})


# Images


@app.post("/images/pull")
@limiter.limit("5/minute")
def pull_image(
    pull: ImagePullRequest,
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    """Pull an image; the request blocks until the daemon finishes"""
    events = []
    orchestrator.pull_image(pull.image, progress=events.append)
    status = events[-1].get("status") if events else None
    return {"image": pull.image, "status": status, "events": len(events)}


@app.get("/images")
@limiter.limit("20/minute")
def list_images(
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    return [image.model_dump() for image in orchestrator.list_images()]


@app.delete("/images/{image_id:path}")
@limiter.limit("10/minute")
def remove_image(
    image_id: str,
    request: Request,
    force: bool = False,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    orchestrator.remove_image(image_id, force=force)
    return {"id": image_id, "removed": True}


# Volumes


@app.post("/volumes", status_code=201)
@limiter.limit("10/minute")
def create_volume(
    volume: VolumeCreateRequest,
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.create_volume(volume.name).model_dump()


@app.get("/volumes")
@limiter.limit("20/minute")
def list_volumes(
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    return [volume.model_dump() for volume in orchestrator.list_volumes()]


@app.delete("/volumes/{name}")
@limiter.limit("10/minute")
def remove_volume(
    name: str,
    request: Request,
    _: bool = Depends(verify_orchestrator_token),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    orchestrator.remove_volume(name)
    return {"name": name, "removed": True}


@app.get("/health", status_code=200)
def health_endpoint(orchestrator: ContainerOrchestrator = Depends(get_orchestrator)):
    """Health check that pings the container daemon"""
    return health_check(orchestrator)


@app.get("/metrics")
async def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Dockmaster",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }
