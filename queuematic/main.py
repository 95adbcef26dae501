import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session, sessionmaker

from queuematic.config import settings
from queuematic.db import SessionLocal
from queuematic.errors import Invalid, QueueError
from queuematic.routers import auth, counters, display, management, queue
from queuematic.security.headers import install_security_headers
from queuematic.security.rate_limit import LoginRateLimiter
from queuematic.security.sessions import install_auth_session_middleware
from queuematic.services.queue_engine import QueueEngine

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / 'templates'


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        if exc.status_code >= 500:
            logger.warning('%s %s failed: %s', request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={'error': exc.code, 'detail': exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = []
        for error in exc.errors():
            location = '.'.join(str(part) for part in error.get('loc', ()) if part != 'body')
            problems.append(f"{location}: {error.get('msg')}" if location else str(error.get('msg')))
        message = '; '.join(problems) or Invalid.default_message
        return JSONResponse(status_code=Invalid.status_code, content={'error': Invalid.code, 'detail': message})


def create_app(session_factory: sessionmaker[Session] | None = None) -> FastAPI:
    app = FastAPI(title='Queuematic')
    app.state.session_factory = session_factory or SessionLocal
    app.state.queue_engine = QueueEngine(app.state.session_factory)
    app.state.login_rate_limiter = LoginRateLimiter(settings.login_max_attempts, settings.login_window_seconds)
    app.state.templates = Jinja2Templates(directory=str(TEMPLATE_DIR))

    install_error_handlers(app)
    install_security_headers(app)
    install_auth_session_middleware(app)

    app.include_router(auth.router)
    app.include_router(queue.router)
    app.include_router(counters.router)
    app.include_router(management.router)
    app.include_router(display.router)

    @app.get('/health')
    def health() -> dict:
        return {'status': 'ok'}

    @app.get('/robots.txt', response_class=PlainTextResponse)
    def robots_txt() -> str:
        return 'User-agent: *\nDisallow: /\n'

    return app


configure_logging()
app = create_app()
