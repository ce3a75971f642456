"""
Application lifecycle event handlers.

Builds the screening component graph, the link repository and the
decision engine on startup and keeps them on ``app.state``; starts and
stops the background scheduler.
"""

from typing import Callable

import structlog
from fastapi import FastAPI

from core.config import settings
from core.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_start_app_handler(app: FastAPI) -> Callable:
    """Create startup event handler."""

    async def start_app() -> None:
        setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        logger.info("Starting SurveyGuard API...", env=settings.APP_ENV)

        from repositories.provider import create_link_repository
        from services.access_decision import AccessDecisionEngine
        from services.fraud_detection import build_components
        from services.quality_control import QualityControlService

        components = build_components()
        app.state.components = components
        if getattr(app.state, "link_repository", None) is None:
            app.state.link_repository = create_link_repository()
        app.state.decision_engine = AccessDecisionEngine(app.state.link_repository, components.screening)
        app.state.quality_control = QualityControlService(
            components.domains, components.honeypots, components.flatline, components.ai_text
        )
        app.state.scheduler = None
        logger.info("Screening components initialized", providers=len(components.screening.providers))

        # Start background scheduler (session sweep, Tor list refresh)
        if settings.ENABLE_BACKGROUND_JOBS:
            try:
                from services.background_scheduler import start_scheduler

                app.state.scheduler = await start_scheduler(components)
            except Exception as e:
                logger.exception("Failed to start background scheduler", error=str(e))
                logger.warning("Abandoned sessions will only expire on read")

        logger.info("SurveyGuard API started successfully")

    return start_app


def create_stop_app_handler(app: FastAPI) -> Callable:
    """Create shutdown event handler."""

    async def stop_app() -> None:
        logger.info("Shutting down SurveyGuard API...")

        # Stop background scheduler
        try:
            from services.background_scheduler import stop_scheduler

            await stop_scheduler(getattr(app.state, "scheduler", None))
        except Exception as e:
            logger.warning(f"Background scheduler cleanup failed: {e}")

        logger.info("SurveyGuard API shutdown complete")

    return stop_app
