"""
aiohttp application factory and server entry point.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional, List

from aiohttp import web

from .. import __version__
from ..utils.config import AnalyticsConfig, load_config
from ..utils.errors import AnalyticsError
from ..utils.logging import get_logger, setup_logging
from ..utils.shutdown import ShutdownPhase
from .context import AppContext, build_context
from .handlers import CONTEXT_KEY, setup_routes

logger = get_logger("usage-analytics.api.app")


def error_response(error: AnalyticsError) -> web.Response:
    headers = {}
    retry_after = error.get_retry_after()
    if retry_after is not None and error.status_code == 429:
        headers["Retry-After"] = str(retry_after)
    return web.json_response(
        {"success": False, "error": {"code": error.code, "message": error.message}},
        status=error.status_code,
        headers=headers,
    )


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except AnalyticsError as e:
        log = logger.warning if e.status_code < 500 else logger.error
        log(
            "request_failed",
            method=request.method,
            path=request.path,
            status=e.status_code,
            code=e.code,
            error=e.message,
        )
        return error_response(e)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(
            "request_error",
            method=request.method,
            path=request.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        return web.json_response(
            {"success": False, "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
            status=500,
        )


def create_app(context: AppContext) -> web.Application:
    """Build the application around an already wired context."""
    app = web.Application(middlewares=[error_middleware])
    app[CONTEXT_KEY] = context
    setup_routes(app)

    async def on_cleanup(app: web.Application) -> None:
        await app[CONTEXT_KEY].close("app_cleanup")

    app.on_cleanup.append(on_cleanup)
    return app


async def run_server(config: AnalyticsConfig, host: str, port: int) -> None:
    setup_logging(
        app_name=config.app_name,
        log_level="DEBUG" if config.debug else config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.json_format,
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
        max_bytes=config.logging.max_size,
        backup_count=config.logging.backup_count,
    )
    context = await build_context(config)
    app = create_app(context)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("server_started", host=host, port=port, version=__version__)
    context.shutdown_manager.register_component("http_site", site.stop, ShutdownPhase.STOP_ACCEPTING)

    context.shutdown_manager.setup_signal_handlers()
    try:
        await context.shutdown_manager.wait_for_shutdown()
    finally:
        await runner.cleanup()
        logger.info("server_stopped", errors=context.shutdown_manager.errors)


def main(argv: Optional[List[str]] = None) -> None:
    """Run the usage analytics HTTP service."""
    import argparse

    parser = argparse.ArgumentParser(description="Usage analytics service")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--config", type=str, action="append", help="Config file path (repeatable)")
    parser.add_argument("--host", type=str, help="Interface to bind")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    if args.version:
        print(f"usage-analytics v{__version__}")
        return

    extra = {"debug": True} if args.debug else None
    paths = [Path(p) for p in args.config] if args.config else None

    try:
        config = asyncio.run(load_config(paths, extra))
        asyncio.run(run_server(
            config,
            args.host or config.api.host,
            args.port or config.api.port,
        ))
    except KeyboardInterrupt:
        logger.info("server_stopped_by_user")
    except AnalyticsError as e:
        logger.error("server_startup_failed", code=e.code, error=e.message)
        sys.exit(1)


if __name__ == "__main__":
    main()
