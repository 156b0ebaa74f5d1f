"""Pullpreview service: per-PR preview builds over HTTP and Socket.IO."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import socketio
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pullpreview import __version__
from pullpreview.config import Settings, settings
from pullpreview.deps import InternalAuth
from pullpreview.events.publisher import SocketIOEventPublisher, register_socket_handlers
from pullpreview.managers.build_executor import BuildExecutor
from pullpreview.managers.container_runtime import ContainerRuntime
from pullpreview.managers.lifecycle import PreviewOrchestrator
from pullpreview.managers.port_allocator import PortAllocator
from pullpreview.managers.process_runner import ProcessRunner
from pullpreview.managers.source_provider import GitSourceProvider
from pullpreview.observability import configure_logging, init_sentry
from pullpreview.routes import health_router, previews_router, webhooks_router
from pullpreview.storage.preview_store import PreviewStore
from pullpreview.storage.redis_client import RedisClient

init_sentry(settings)

logger = configure_logging(
    "pullpreview", log_level=settings.log_level, environment=settings.environment
)


def create_sio(config: Settings) -> socketio.AsyncServer:
    """Socket.IO server carrying state updates and build logs."""
    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=config.cors_origins or "*",
        logger=False,
        engineio_logger=False,
    )
    register_socket_handlers(sio)
    return sio


def build_orchestrator(
    config: Settings, store: PreviewStore, sio: socketio.AsyncServer
) -> PreviewOrchestrator:
    """Wire every component of the build pipeline from configuration."""
    runner = ProcessRunner()
    runtime = ContainerRuntime()
    allocator = PortAllocator(
        store,
        min_port=config.port_range_min,
        max_port=config.port_range_max,
        probe_host=config.port_probe_host,
    )
    source = GitSourceProvider(
        runner,
        workdir=config.workdir,
        git_base_url=config.git_base_url,
        github_token=config.github_token,
        timeout=config.build_timeout_seconds,
    )
    executor = BuildExecutor(store, allocator, runtime, runner, config)
    return PreviewOrchestrator(
        store=store,
        executor=executor,
        source=source,
        runtime=runtime,
        runner=runner,
        publisher=SocketIOEventPublisher(sio),
    )


def create_app(config: Settings | None = None) -> FastAPI:
    """Create the FastAPI application. Components are built in the lifespan."""
    config = config or settings
    sio = create_sio(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Starting pullpreview",
            environment=config.environment,
            port_range=f"{config.port_range_min}-{config.port_range_max}",
        )
        redis = RedisClient(config.redis_url)
        await redis.connect()
        store = PreviewStore(redis)
        app.state.redis = redis
        app.state.store = store
        app.state.orchestrator = build_orchestrator(config, store, sio)

        yield

        logger.info("Shutting down pullpreview")
        await app.state.orchestrator.shutdown()
        await redis.disconnect()

    app = FastAPI(
        title="Pullpreview",
        description="Ephemeral preview deployments for pull requests",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.sio = sio

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(previews_router)

    @app.get("/")
    async def root(_auth: InternalAuth) -> dict[str, str]:
        """Root endpoint."""
        return {"service": "pullpreview", "version": __version__}

    return app


app = create_app()

# Socket.IO wraps the FastAPI app; serve this one
socket_app = socketio.ASGIApp(app.state.sio, app)
