"""
clusterpilot - FastAPI Backend

REST API for cluster management and guided deployments.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ...agents.dispatcher import HTTPAgentDispatcher
from ...cluster.logs import AgentLogCollector
from ...cluster.service import ClusterService, get_cluster_service, init_cluster_service, set_cluster_service
from ...config.loader import Config, load_config
from ...deploy.installer import HTTPInstaller
from ...deploy.workflow import (
    WorkflowManager,
    get_workflow_manager,
    init_workflow_manager,
    set_workflow_manager,
)
from ...hosts.directory import HTTPHostDirectory, InMemoryHostDirectory
from ...registry.storage_sqlite import ClusterRegistry
from ...utils.logging import logger, setup_logging
from .errors import envelope, register_error_handlers
from .middleware import limiter, request_logging_middleware
from .routes import clusters, deployments


# Global registry, closed on shutdown
registry: Optional[ClusterRegistry] = None


def build_services(cfg: Config) -> ClusterService:
    """Wire the registry, host directory, dispatcher and installer from config."""
    global registry

    registry = ClusterRegistry(cfg.database.resolved_path())

    if cfg.hosts.base_url:
        host_directory = HTTPHostDirectory(cfg.hosts.base_url, cfg.hosts.request_timeout_seconds)
        logger.info(f"Host directory: {cfg.hosts.base_url}")
    else:
        host_directory = InMemoryHostDirectory()
        logger.warning("No host directory URL configured, using in-memory host directory")

    if cfg.agent.gateway_url:
        dispatcher = HTTPAgentDispatcher(cfg.agent.gateway_url, cfg.agent.command_timeout_seconds)
        logger.info(f"Agent gateway: {cfg.agent.gateway_url}")
    else:
        dispatcher = None
        logger.warning("No agent gateway configured, lifecycle operations will be queued")

    log_collector = AgentLogCollector(dispatcher) if dispatcher else None
    service = init_cluster_service(
        registry, host_directory, dispatcher=dispatcher, config=cfg, log_collector=log_collector
    )

    installer = HTTPInstaller(cfg.deploy.installer_url) if cfg.deploy.installer_url else None
    if installer is None:
        logger.warning("No installer configured, deployments will fail at the install step")

    init_workflow_manager(service, installer, defaults=cfg.defaults, deploy_config=cfg.deploy)
    return service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    logger.info("Starting clusterpilot API")

    cfg = load_config()
    setup_logging(
        level=cfg.logging.level,
        log_file=cfg.logging.file,
        console=cfg.logging.console
    )

    if get_cluster_service() is None:
        build_services(cfg)

    logger.info("clusterpilot API started successfully")

    yield

    logger.info("Shutting down clusterpilot API")
    if registry is not None:
        registry.close()


# Create FastAPI app
app = FastAPI(
    title="clusterpilot API",
    description="Control plane for engine clusters: registry, health, lifecycle operations and deployments",
    version="0.1.0",
    lifespan=lifespan
)

# Add rate limiter state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:8000"
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    return await request_logging_middleware(request, call_next)


app.include_router(clusters.router)  # prefix="/api/v1/clusters"
app.include_router(deployments.router)  # prefix="/api/v1/deployments"


@app.get("/health")
async def health_check():
    """Liveness endpoint."""
    return envelope({
        "status": "healthy",
        "cluster_service": get_cluster_service() is not None,
        "workflow_manager": get_workflow_manager() is not None,
    })


def set_services(service: ClusterService, manager: Optional[WorkflowManager] = None) -> None:
    """Set the global service instances (for testing)."""
    set_cluster_service(service)
    set_workflow_manager(manager)


def main():
    """Main entry point for the clusterpilot API server."""
    import uvicorn

    cfg = load_config()
    uvicorn.run(
        "clusterpilot.web.backend.main:app",
        host=cfg.server.host,
        port=cfg.server.port,
        log_level=cfg.logging.level.lower()
    )


if __name__ == "__main__":
    main()
