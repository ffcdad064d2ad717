"""
vector-memory-server entry point.

    vector-memory-server [--db-file PATH] [--port N] [--no-http] [--transport stdio|http|sse]

stdio (default) serves MCP on stdin/stdout and, unless --no-http, the REST
bridge on the same event loop. Logs always go to stderr.
"""

import asyncio
import logging
import sys
from typing import List, Optional

import uvicorn

from config import Settings, load_settings, parse_cli_args
from services import close_memory_service, configure, get_memory_service

logger = logging.getLogger("vector_memory")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _http_server(settings: Settings) -> uvicorn.Server:
    from main import create_app

    app = create_app(manage_service=False)
    return uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.http_host,
            port=settings.http_port,
            log_level="warning",
        )
    )


async def _serve_stdio(settings: Settings) -> None:
    from mcp_server import mcp

    http_server: Optional[uvicorn.Server] = None
    http_task: Optional[asyncio.Task] = None
    if settings.enable_http:
        http_server = _http_server(settings)
        http_task = asyncio.create_task(http_server.serve())
        logger.info(
            "REST bridge listening on http://%s:%d", settings.http_host, settings.http_port
        )
    try:
        await mcp.run_stdio_async()
    finally:
        if http_server is not None and http_task is not None:
            http_server.should_exit = True
            await http_task


async def run(settings: Settings) -> None:
    configure(settings)
    service = get_memory_service()
    status = await service.health()
    logger.info(
        "Memory store at %s ready (%d memories, %s/%d)",
        settings.db_path,
        status["memories"],
        status["embeddingModel"],
        status["embeddingDimension"],
    )
    try:
        if settings.transport == "http":
            logger.info("HTTP-only mode on http://%s:%d", settings.http_host, settings.http_port)
            await _http_server(settings).serve()
        elif settings.transport == "sse":
            from run_sse import serve_sse

            await serve_sse(settings.http_host, settings.http_port)
        else:
            await _serve_stdio(settings)
    finally:
        await close_memory_service()


def main(argv: Optional[List[str]] = None) -> None:
    settings = load_settings(parse_cli_args(argv))
    configure_logging(settings.log_level)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")


if __name__ == "__main__":
    main()
