import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

import structlog

from workspace_host import __version__
from workspace_host.deploy import PreviewDeployer, deploy_full_preview
from workspace_host.env import API_KEY, CORS_ALLOWED_ORIGINS, HEALTH_RESETS_IDLE
from workspace_host.errors import DeploymentError, WorkspaceHostError
from workspace_host.idle import IdleGovernor
from workspace_host.orchestrator import CommandOrchestrator, ExecutionResult
from workspace_host.ports import PortScanner
from workspace_host.proxy import Gateway, upstream_path
from workspace_host.supervisor import STATIC_SERVER, ProcessSupervisor, read_log
from workspace_host.workdirs import DirectoryRegistry, validate_repository_id

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
):
    if not API_KEY:
        return
    if not credentials or credentials.credentials != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ExecRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    command: str = Field(
        ...,
        min_length=1,
        description="Shell command to execute in the repository's working directory.",
        json_schema_extra={"examples": ["ls -la", "cd src", "npm run dev"]},
    )
    working_dir: Optional[str] = Field(
        None,
        alias="workingDir",
        description="Directory to run in. Becomes the repository's working directory.",
    )
    repository_id: Optional[str] = Field(
        None,
        alias="repositoryId",
        description="Repository the command belongs to. Defaults to 'default'.",
    )


class RepositoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repository_id: str = Field(..., alias="repositoryId", min_length=1)


class DeployRequest(RepositoryRequest):
    port: Optional[int] = Field(
        None,
        ge=1,
        le=65535,
        description="Port the app listens on. Defaults to the running server's port, then 8080.",
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_orchestrator(request: Request) -> CommandOrchestrator:
    return request.app.state.orchestrator


def get_supervisor(request: Request) -> ProcessSupervisor:
    return request.app.state.supervisor


def get_scanner(request: Request) -> PortScanner:
    return request.app.state.scanner


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


router = APIRouter()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    operation_id="health_check",
    summary="Health check",
    description="Liveness probe. No authentication required.",
)
async def health(request: Request):
    return {"status": "ok", "uptime": int(time.time() - request.app.state.started_at)}


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------


@router.post(
    "/execute",
    operation_id="run_command",
    summary="Execute a command",
    description=(
        "Run a shell command for a repository. `cd` persists across requests, "
        "dev-server commands are started in the background and exposed through "
        "the proxy, other commands run to completion."
    ),
    response_model=ExecutionResult,
    dependencies=[Depends(verify_api_key)],
    responses={401: {"description": "Invalid or missing API key."}},
)
async def execute(
    body: ExecRequest,
    orchestrator: CommandOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.execute(body.command, body.repository_id, body.working_dir)


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


@router.post(
    "/server/stop",
    operation_id="stop_server",
    summary="Stop a repository's dev server",
    dependencies=[Depends(verify_api_key)],
    responses={
        400: {"description": "Invalid repository id."},
        401: {"description": "Invalid or missing API key."},
    },
)
async def stop_server(
    body: RepositoryRequest,
    supervisor: ProcessSupervisor = Depends(get_supervisor),
):
    try:
        validate_repository_id(body.repository_id)
    except WorkspaceHostError as e:
        raise HTTPException(status_code=400, detail=e.message)

    if await supervisor.stop(body.repository_id, STATIC_SERVER):
        return {"success": True, "output": f"Server for {body.repository_id} stopped"}
    return {"success": True, "output": f"No server running for {body.repository_id}"}


@router.get(
    "/server/status",
    operation_id="server_status",
    summary="List running dev servers and exposed ports",
    dependencies=[Depends(verify_api_key)],
    responses={401: {"description": "Invalid or missing API key."}},
)
async def server_status(
    supervisor: ProcessSupervisor = Depends(get_supervisor),
    scanner: PortScanner = Depends(get_scanner),
):
    servers = [
        {
            "repository": process.repository_id,
            "type": process.role,
            "port": process.port,
            "uptime": int(process.uptime),
            "url": scanner.proxy_url(process.port),
            "command": process.command,
        }
        for process in supervisor.running_processes()
    ]
    return {"servers": servers, "exposedPorts": await scanner.scan()}


@router.get(
    "/server/logs/{repository_id}",
    operation_id="server_logs",
    summary="Read a dev server's output",
    description="Output of the repository's managed server. Pass next_offset back as offset to poll for new lines.",
    dependencies=[Depends(verify_api_key)],
    responses={
        404: {"description": "No server has been started for this repository."},
        401: {"description": "Invalid or missing API key."},
    },
)
async def server_logs(
    repository_id: str,
    offset: int = Query(0, ge=0, description="Number of output entries to skip."),
    tail: Optional[int] = Query(None, ge=1, description="Return only the last N entries."),
    supervisor: ProcessSupervisor = Depends(get_supervisor),
):
    process = supervisor.get(repository_id, STATIC_SERVER)
    if process is None:
        raise HTTPException(status_code=404, detail="No server running for this repository")

    output, next_offset, truncated = await read_log(process.log_path, offset=offset, tail=tail)
    return {
        "repository": repository_id,
        "running": process.running,
        "output": output,
        "next_offset": next_offset,
        "truncated": truncated,
    }


# ---------------------------------------------------------------------------
# Full preview
# ---------------------------------------------------------------------------


@router.post(
    "/preview/deploy",
    operation_id="deploy_preview",
    summary="Build and deploy a durable preview",
    dependencies=[Depends(verify_api_key)],
    responses={
        503: {"description": "No preview deployer configured on this host."},
        401: {"description": "Invalid or missing API key."},
    },
)
async def deploy_preview(
    body: DeployRequest,
    request: Request,
    supervisor: ProcessSupervisor = Depends(get_supervisor),
):
    deployer: Optional[PreviewDeployer] = request.app.state.preview_deployer
    if deployer is None:
        raise HTTPException(status_code=503, detail="Full previews are not configured")

    try:
        directory = request.app.state.directories.resolve(
            validate_repository_id(body.repository_id)
        )
    except WorkspaceHostError as e:
        raise HTTPException(status_code=400, detail=e.message)

    port = body.port
    if port is None:
        running = supervisor.get(body.repository_id, STATIC_SERVER)
        port = running.port if running else 8080

    try:
        result = await deploy_full_preview(deployer, directory, port)
    except DeploymentError as e:
        logger.warning("Preview deployment failed", repository_id=body.repository_id, error=e.message)
        return {"success": False, "error": e.message}
    return {"success": True, "url": result.url, "buildId": result.build_id}


# ---------------------------------------------------------------------------
# Proxy
# ---------------------------------------------------------------------------

_PROXY_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


@router.api_route("/proxy/{port}", methods=_PROXY_METHODS, include_in_schema=False)
@router.api_route("/proxy/{port}/{path:path}", methods=_PROXY_METHODS, include_in_schema=False)
async def proxy(
    request: Request,
    port: int = Path(..., ge=1, le=65535),
    path: str = "",
    gateway: Gateway = Depends(get_gateway),
):
    return await gateway.proxy(port, upstream_path(request, path), request)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(
    directories: Optional[DirectoryRegistry] = None,
    supervisor: Optional[ProcessSupervisor] = None,
    scanner: Optional[PortScanner] = None,
    gateway: Optional[Gateway] = None,
    idle: Optional[IdleGovernor] = None,
    preview_deployer: Optional[PreviewDeployer] = None,
    health_resets_idle: bool = HEALTH_RESETS_IDLE,
) -> FastAPI:
    """Build the application. Components left as None are created at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        state.started_at = time.time()
        state.directories = directories if directories is not None else DirectoryRegistry()
        state.supervisor = supervisor if supervisor is not None else ProcessSupervisor()
        state.scanner = scanner if scanner is not None else PortScanner()
        state.gateway = gateway if gateway is not None else Gateway()
        state.idle = idle if idle is not None else IdleGovernor()
        state.preview_deployer = preview_deployer
        state.orchestrator = CommandOrchestrator(
            state.directories, state.supervisor, state.scanner
        )

        await state.supervisor.open()
        state.idle.touch()
        logger.info(
            "Workspace host started",
            project_root=state.directories.project_root,
            idle_timeout=state.idle.window,
        )
        try:
            yield
        finally:
            state.idle.cancel()
            await state.supervisor.close()
            await state.gateway.aclose()
            logger.info("Workspace host stopped")

    app = FastAPI(
        title="Workspace Host",
        description="Remote command execution and dev-server preview gateway.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in CORS_ALLOWED_ORIGINS.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_activity(request: Request, call_next):
        """Every request except liveness probes holds off idle shutdown until it completes."""
        if not health_resets_idle and request.url.path == "/health":
            return await call_next(request)
        with request.app.state.idle.activity():
            return await call_next(request)

    app.include_router(router)
    return app


app = create_app()
