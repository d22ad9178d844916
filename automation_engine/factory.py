"""Application factory for creating FastAPI instances and engine components."""

from datetime import timedelta
from typing import Optional
from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy.orm import sessionmaker

from .config import AppConfig, get_config, validate_config
from .core.capabilities import CapabilityKind, CapabilityRegistry
from .core.clock import Clock, utc_now
from .core.execution_engine import ExecutionEngine
from .core.graph_manager import GraphManager
from .core.error_recovery import health_checker
from .core.logging import get_logger, setup_logging_from_config
from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware
from .core.scheduler import QueueScheduler, SchedulerRunner
from .core.triggers import TriggerService
from .storage.database import create_tables, get_database_engine, get_session_factory
from .storage.migrations import run_migrations
from .storage.sql_store import SQLExecutionStore
from .tools import EchoAiCapability, HttpRequestCapability, LogMessageCapability
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.store: Optional[SQLExecutionStore] = None
        self.capabilities: Optional[CapabilityRegistry] = None
        self.graph_manager: Optional[GraphManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.scheduler: Optional[QueueScheduler] = None
        self.trigger_service: Optional[TriggerService] = None
        self.scheduler_runner: Optional[SchedulerRunner] = None


# Global application state
app_state = ApplicationState()

SIMULATED_KINDS = (
    CapabilityKind.SEND_MESSAGE,
    CapabilityKind.EMAIL,
    CapabilityKind.SMS,
    CapabilityKind.CRM,
    CapabilityKind.BILLING,
    CapabilityKind.NOTIFICATION,
)


def register_default_capabilities(registry: CapabilityRegistry, config: AppConfig, logger) -> None:
    """Register the http capability and, if enabled, logging stand-ins for the rest."""
    registry.register(
        CapabilityKind.HTTP,
        HttpRequestCapability(default_timeout=config.http_timeout_seconds),
        replace=True,
    )
    if config.simulated_capabilities:
        for kind in SIMULATED_KINDS:
            registry.register(kind, LogMessageCapability(kind.value), replace=True)
        registry.register(CapabilityKind.AI_AGENT, EchoAiCapability(), replace=True)
        logger.info("Simulated capabilities registered")
    logger.info(f"Capabilities available: {sorted(registry.list())}")


def build_components(config: AppConfig,
                     session_factory: Optional[sessionmaker] = None,
                     capabilities: Optional[CapabilityRegistry] = None,
                     clock: Clock = utc_now) -> ApplicationState:
    """Wire store, engine, scheduler and trigger service for ``config``."""
    logger = get_logger(__name__)
    state = ApplicationState()
    state.config = config

    if session_factory is None:
        session_factory = get_session_factory(
            get_database_engine(config.database_url, echo=config.database_echo)
        )
    state.store = SQLExecutionStore(session_factory, clock=clock)

    if capabilities is None:
        capabilities = CapabilityRegistry()
        register_default_capabilities(capabilities, config, logger)
    state.capabilities = capabilities

    state.graph_manager = GraphManager(state.store)
    state.execution_engine = ExecutionEngine(
        state.store,
        capabilities=capabilities,
        clock=clock,
        max_steps=config.max_steps_per_run,
    )
    state.scheduler = QueueScheduler(
        state.store,
        state.execution_engine,
        batch_limit=config.scheduler_batch_limit,
        stale_claim_timeout=timedelta(seconds=config.stale_claim_timeout_seconds),
        clock=clock,
    )
    state.trigger_service = TriggerService(state.store, state.execution_engine, state.scheduler)
    logger.info("Core components initialized")
    return state


def setup_health_checks(state: ApplicationState, logger) -> None:
    """Register the component checks behind /health/detailed."""

    def check_database():
        state.store.ping()
        return {"message": "Database connection successful"}

    def check_capabilities():
        return {
            "message": "Capability registry operational",
            "registered_capabilities": len(state.capabilities.list()),
        }

    def check_scheduler():
        runner = state.scheduler_runner
        return {
            "message": "Queue scheduler configured",
            "background_runner": bool(runner and runner.is_running()),
        }

    health_checker.register_check("database", check_database)
    health_checker.register_check("capabilities", check_capabilities)
    health_checker.register_check("scheduler", check_scheduler)
    logger.info("Health checks registered")


def initialize_database(config: AppConfig, logger) -> None:
    """Create tables and run index migrations."""
    engine = get_database_engine(config.database_url, echo=config.database_echo)
    create_tables(engine)
    logger.info("Database tables created")
    try:
        run_migrations(engine)
    except Exception as e:
        # Indexes only speed things up; startup continues without them.
        logger.warning(f"Database migrations failed: {str(e)}")


def create_lifespan_handler(config: AppConfig, state: Optional[ApplicationState] = None):
    """Lifespan that wires components at startup and stops the scheduler thread at shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging_from_config(config)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        components = state
        if components is None:
            initialize_database(config, logger)
            components = build_components(config)

        app_state.__dict__.update(components.__dict__)
        init_dependencies(
            graph_manager=components.graph_manager,
            execution_engine=components.execution_engine,
            scheduler=components.scheduler,
            trigger_service=components.trigger_service,
            cron_secret=config.cron_secret,
        )
        setup_health_checks(app_state, logger)

        if config.scheduler_enabled:
            app_state.scheduler_runner = SchedulerRunner(
                components.scheduler, interval_seconds=config.scheduler_interval_seconds
            )
            app_state.scheduler_runner.start()
        elif not config.cron_secret:
            logger.warning("Scheduler runner disabled and no cron secret set; /queue/process is unguarded")

        try:
            yield
        finally:
            logger.info(f"Shutting down {config.app_name}")
            if app_state.scheduler_runner:
                app_state.scheduler_runner.stop()
                app_state.scheduler_runner = None

    return lifespan


def create_app(config: Optional[AppConfig] = None,
               state: Optional[ApplicationState] = None) -> FastAPI:
    """Create the FastAPI application.

    ``state`` lets callers supply prebuilt components (tests use this to
    point the API at a temporary database and a frozen clock).
    """
    if config is None:
        config = state.config if state and state.config else get_config()
    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Workflow automation engine: graph interpreter with durable waits",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, state)
    )

    # Starlette runs the last added middleware first, so CORS wraps everything.
    app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(ErrorHandlingMiddleware)
    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.include_router(router)
    app.include_router(health_router(config))
    return app


def health_router(config: AppConfig) -> APIRouter:
    """Liveness and component health endpoints."""
    health = APIRouter(tags=["health"])
    service = config.app_name.lower().replace(" ", "-")

    @health.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @health.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service, "version": config.app_version}

    @health.get("/health/detailed")
    def detailed_health_check():
        """Run every registered component check; 503 when any fails."""
        results = health_checker.run_all_checks()
        return JSONResponse(
            status_code=200 if results["overall_status"] == "healthy" else 503,
            content={"service": service, "version": config.app_version, **results},
        )

    return health
