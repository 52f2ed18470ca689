import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from portal.config import settings

NOISY_LOGGERS = ("uvicorn", "sqlalchemy", "alembic", "cloudinary", "websockets")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """Configure application logging."""
    level = level or settings.LOG_LEVEL
    log_file = log_file or settings.LOG_FILE
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_file:
        os.makedirs(Path(log_file).parent, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file) if log_file else logging.NullHandler(),
        ]
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger("portal")
    logger.setLevel(log_level)
    return logger


def _caller(authorization: Optional[str]) -> str:
    # For log lines only; the token is verified by the route dependencies
    if not authorization or not authorization.lower().startswith("bearer "):
        return "anonymous"
    try:
        claims = jwt.get_unverified_claims(authorization.split(" ", 1)[1])
    except JWTError:
        return "invalid-token"
    return f"{claims.get('sub', 'unknown')}/{claims.get('role', 'unknown')}"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every REST call with its caller, status and duration."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = logging.getLogger("portal.request")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.time()
        request.state.request_id = request_id
        caller = _caller(request.headers.get("authorization"))

        self.logger.info(
            f"Request started: {request.method} {request.url.path} "
            f"[caller: {caller}] [request_id: {request_id}]"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                f"Request failed: {request.method} {request.url.path} "
                f"[error: {str(e)}] [request_id: {request_id}]",
                exc_info=True
            )
            raise

        duration = time.time() - start_time
        self.logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"[status: {response.status_code}] [duration: {duration:.3f}s] "
            f"[request_id: {request_id}]"
        )
        response.headers["X-Request-ID"] = request_id
        return response


class WebSocketLoggingMiddleware:
    """
    Logs the lifetime of realtime connections. BaseHTTPMiddleware never sees
    websocket traffic, so this one sits at the ASGI level.
    """

    def __init__(self, app: ASGIApp):
        self.app = app
        self.logger = logging.getLogger("portal.realtime.connections")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "websocket":
            await self.app(scope, receive, send)
            return

        connection_id = str(uuid.uuid4())
        start_time = time.time()
        path = scope.get("path", "")
        client = scope.get("client")
        close_code = None

        async def send_wrapper(message: Message) -> None:
            nonlocal close_code
            if message["type"] == "websocket.close":
                close_code = message.get("code", 1000)
            await send(message)

        self.logger.info(
            f"WebSocket opened: {path} [client: {client[0] if client else 'unknown'}] "
            f"[connection_id: {connection_id}]"
        )
        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            self.logger.info(
                f"WebSocket closed: {path} [code: {close_code if close_code is not None else 'client'}] "
                f"[duration: {duration:.3f}s] [connection_id: {connection_id}]"
            )


def add_logging_middleware(app: FastAPI):
    """Add request and realtime connection logging to the FastAPI app."""
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(WebSocketLoggingMiddleware)
