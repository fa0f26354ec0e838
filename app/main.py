from fastapi import FastAPI
from slowapi.middleware import SlowAPIMiddleware

from app.api.v1 import api_router
from app.core.errors import register_exception_handlers
from app.core.response_envelope import register_response_envelope
from app.core.limiter import limiter
from app.core.logging import configure_logging
from app.core.settings import settings
from app.events import register_event_handlers
from app.middlewares.request_context import RequestContextMiddleware
from app.middlewares.security_headers import SecurityHeadersMiddleware
from app.services.background import BackgroundRunner
from app.services.callbacks import CallbackDispatcher
from app.services.ess_bridge import EssBridge
from app.services.loan_lifecycle import LoanLifecycle


def create_app(
    *,
    lifecycle: LoanLifecycle | None = None,
    runner: BackgroundRunner | None = None,
) -> FastAPI:
    configure_logging()
    app = FastAPI(title="ESS Loan Bridge", version="0.1.0")
    register_exception_handlers(app)
    register_response_envelope(app)

    runner = runner or BackgroundRunner()
    lifecycle = lifecycle or LoanLifecycle(dispatcher=CallbackDispatcher(), runner=runner)
    if lifecycle.runner is None:
        lifecycle.runner = runner
    app.state.limiter = limiter
    app.state.runner = runner
    app.state.lifecycle = lifecycle
    app.state.dispatcher = lifecycle.dispatcher
    app.state.bridge = EssBridge(lifecycle=lifecycle, runner=runner)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.enable_hsts)
    app.include_router(api_router, prefix="/api/v1")
    register_event_handlers(app)
    return app


app = create_app()
