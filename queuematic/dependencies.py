from fastapi import Request
from fastapi.templating import Jinja2Templates

from queuematic.security.rate_limit import LoginRateLimiter
from queuematic.services.queue_engine import QueueEngine


def get_templates(request: Request) -> Jinja2Templates:
    return request.app.state.templates


def get_queue_engine(request: Request) -> QueueEngine:
    return request.app.state.queue_engine


def get_login_rate_limiter(request: Request) -> LoginRateLimiter:
    return request.app.state.login_rate_limiter


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None
