import logging

from fastapi import FastAPI

from app.core.settings import settings

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info(
            "Application startup (fsp_code=%s, lock_backend=%s, signature_verification=%s)",
            settings.fsp_code,
            settings.application_lock_backend,
            settings.ess_signature_verification_enabled,
        )
        if not settings.ess_signature_verification_enabled:
            logger.warning("ESS signature verification is disabled; use only against a simulator")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        # follow-ups must stop before the callback client closes
        await app.state.runner.shutdown()
        await app.state.dispatcher.aclose()
