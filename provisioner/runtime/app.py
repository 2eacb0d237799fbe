import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from loguru import logger

from provisioner.runtime.config_source import DirectoryConfigSource
from provisioner.runtime.errors import ProvisionerError
from provisioner.runtime.execution.executor import TofuExecutor
from provisioner.runtime.execution.resolver import WorkspaceResolver
from provisioner.runtime.fetchers import FetcherRegistry, default_fetchers
from provisioner.runtime.log import setup_logging
from provisioner.runtime.managers.lifecycle import LifecycleController
from provisioner.runtime.managers.templates import TemplateRegistry
from provisioner.runtime.models.api import ErrorResponse
from provisioner.runtime.registry import WorkspaceRegistry
from provisioner.runtime.scheduler import SchedulerLoop
from provisioner.runtime.settings import get_settings
from provisioner.runtime.store.local import LocalStateStore

# Domain error kind -> HTTP status.  Unlisted kinds map to 500.
STATUS_BY_KIND: dict[str, int] = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "AlreadyExists": status.HTTP_409_CONFLICT,
    "Busy": status.HTTP_409_CONFLICT,
    "InUse": status.HTTP_409_CONFLICT,
    "InvalidTransition": status.HTTP_409_CONFLICT,
    "ValidationError": status.HTTP_422_UNPROCESSABLE_CONTENT,
    "FetchError": status.HTTP_502_BAD_GATEWAY,
    "Disabled": status.HTTP_403_FORBIDDEN,
    "Timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "ShuttingDown": status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, json_lines=settings.log_json)

    logger.info("Provisioner daemon starting (host={}, port={})", settings.host, settings.port)
    logger.info(
        "Workspaces: {} | state: {} | templates: {}",
        settings.workspaces_path,
        settings.state_path,
        settings.templates_path,
    )

    store = LocalStateStore(settings.state_path)
    templates = TemplateRegistry(
        settings.templates_path,
        fetchers=FetcherRegistry(default_fetchers(timeout=settings.fetch_timeout)),
        fetch_timeout=settings.fetch_timeout,
    )
    registry = WorkspaceRegistry(store)

    # Startup recovery: actions interrupted by a crash become failed.
    recovered = await registry.load()
    if recovered > 0:
        logger.info("Startup recovery: {} interrupted actions marked as failed", recovered)

    controller = LifecycleController(
        registry,
        WorkspaceResolver(templates, settings.deployments_path),
        TofuExecutor(settings.tofu_binary),
        action_timeout=settings.action_timeout,
    )
    scheduler = SchedulerLoop(
        DirectoryConfigSource(settings.workspaces_path),
        registry,
        controller,
        poll_interval=settings.poll_interval,
    )
    await scheduler.reload()

    _app.state.templates = templates
    _app.state.controller = controller
    _app.state.scheduler = scheduler
    loop_task = asyncio.create_task(scheduler.run(), name="scheduler-loop")

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("Provisioner daemon shutting down (active_actions={})", registry.active_count)

    # 1. Stop evaluating schedules.
    scheduler.stop()
    await loop_task

    # 2. Refuse new actions and let in-flight ones finish.
    registry.begin_shutdown()
    if registry.active_count > 0:
        timeout = settings.graceful_shutdown_timeout
        logger.info("Waiting for {} in-flight actions to finish (timeout={}s)...", registry.active_count, timeout)
        await registry.wait_until_drained(timeout=timeout)

    # 3. Persist the final state of every workspace.
    await registry.flush()
    _app.state.controller = None
    _app.state.scheduler = None
    _app.state.templates = None


app = FastAPI(title="Provisioner", lifespan=lifespan)


@app.exception_handler(ProvisionerError)
async def provisioner_error_handler(_request: Request, exc: ProvisionerError) -> JSONResponse:
    code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = ErrorResponse(kind=exc.kind, message=str(exc))
    return JSONResponse(status_code=code, content=body.model_dump())


# ---------------------------------------------------------------------------
# API router -- all endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


from provisioner.runtime.routers.templates import router as templates_router  # noqa: E402
from provisioner.runtime.routers.workspaces import router as workspaces_router  # noqa: E402

api.include_router(workspaces_router)
api.include_router(templates_router)

app.include_router(api)
