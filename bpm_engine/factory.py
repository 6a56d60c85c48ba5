"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging
from .core.events import EventBus
from .core.expressions import ExpressionEvaluator
from .core.rule_registry import RuleRegistry
from .core.session_manager import SimulationSessionManager
from .core.validation_engine import ValidationEngine
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.event_bus: Optional[EventBus] = None
        self.expression_evaluator: Optional[ExpressionEvaluator] = None
        self.rule_registry: Optional[RuleRegistry] = None
        self.validation_engine: Optional[ValidationEngine] = None
        self.session_manager: Optional[SimulationSessionManager] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def register_default_rules(rule_registry: RuleRegistry, logger) -> None:
    """Register the built-in workflow rules."""
    try:
        from .rules.default_rules import get_default_rules

        for rule in get_default_rules():
            if rule_registry.rule_exists(rule.id):
                logger.info(f"Rule already exists: {rule.id}")
                continue
            rule_registry.register_rule(rule)
            logger.info(f"Registered rule: {rule.id}")

        logger.info("Default rules registration completed")

    except Exception as e:
        logger.error(f"Failed to register default rules: {e}")
        raise


def initialize_core_components(config: AppConfig, logger) -> tuple:
    """Initialize core application components."""
    try:
        event_bus = EventBus()
        expression_evaluator = ExpressionEvaluator(
            max_expression_length=config.max_expression_length,
            max_script_length=config.max_script_length
        )
        rule_registry = RuleRegistry(event_bus=event_bus)
        validation_engine = ValidationEngine(
            rule_registry=rule_registry,
            event_bus=event_bus,
            evaluator=expression_evaluator,
            unknown_rule_policy=config.unknown_rule_policy
        )
        session_manager = SimulationSessionManager(
            evaluator=expression_evaluator,
            event_bus=event_bus,
            max_steps=config.simulation_max_steps,
            max_sessions=config.max_simulation_sessions
        )

        logger.info("Core components initialized")

        return event_bus, expression_evaluator, rule_registry, validation_engine, session_manager

    except Exception as e:
        logger.error(f"Core components initialization failed: {e}")
        raise


def graceful_shutdown(session_manager: SimulationSessionManager, event_bus: EventBus, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down BPM Workflow Engine")

    try:
        sessions = session_manager.list_sessions()
        for session in sessions:
            session_manager.delete_session(session.session_id)
        logger.info(f"Stopped {len(sessions)} simulation sessions")
    except Exception as e:
        logger.error(f"Error stopping simulation sessions: {str(e)}")

    event_bus.clear()


def create_lifespan_handler(config: AppConfig):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )

        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            components = initialize_core_components(config, logger)
            event_bus, expression_evaluator, rule_registry, validation_engine, session_manager = components

            # Store components in global state
            app_state.config = config
            app_state.event_bus = event_bus
            app_state.expression_evaluator = expression_evaluator
            app_state.rule_registry = rule_registry
            app_state.validation_engine = validation_engine
            app_state.session_manager = session_manager
            app_state.logger = logger

            if config.register_default_rules:
                register_default_rules(rule_registry, logger)

            init_dependencies(
                validation_engine=validation_engine,
                expression_evaluator=expression_evaluator,
                session_manager=session_manager,
                rule_registry=rule_registry
            )

            logger.info("Application startup completed successfully")

        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        # Shutdown
        try:
            graceful_shutdown(session_manager, event_bus, logger)
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""

    # Use provided config or load from environment
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Validation and token-flow simulation core for BPM workflow graphs",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_performance_monitoring:
        from .core.middleware import (
            ErrorHandlingMiddleware,
            RequestLoggingMiddleware,
            PerformanceMonitoringMiddleware
        )

        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)

    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Health check endpoint with component counts."""
        payload = {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }
        if app_state.rule_registry is not None:
            payload["rules"] = len(app_state.rule_registry.list_rules())
        if app_state.session_manager is not None:
            payload["sessions"] = app_state.session_manager.session_count()
        return payload


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
