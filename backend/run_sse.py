import logging
from typing import Awaitable, Callable

import uvicorn
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from auth import auth_failure_reason
from mcp_server import mcp

logger = logging.getLogger(__name__)


def apply_mcp_api_key_middleware(app: ASGIApp) -> ASGIApp:
    async def _auth_middleware(request: Request, call_next: Callable[[Request], Awaitable]):
        reason = auth_failure_reason(request)
        if reason is not None:
            return JSONResponse(
                status_code=401,
                content={
                    "error": "mcp_sse_auth_failed",
                    "reason": reason,
                },
                headers={"WWW-Authenticate": "Bearer"},
            )
        return await call_next(request)

    app.add_middleware(BaseHTTPMiddleware, dispatch=_auth_middleware)
    return app


def create_sse_app() -> ASGIApp:
    app = mcp.sse_app()
    return apply_mcp_api_key_middleware(app)


async def serve_sse(host: str, port: int) -> None:
    """
    Serve the MCP tools over SSE (Server-Sent Events) for clients that
    cannot spawn a stdio process.
    """
    app = create_sse_app()
    logger.info("Starting SSE server on http://%s:%d (endpoint /sse)", host, port)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    await server.serve()
