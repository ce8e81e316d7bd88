"""
aiohttp plumbing shared by the desk and the glue services.
"""

import logging
from typing import Any, Awaitable, Callable, Dict

import aiohttp_cors
from aiohttp import web, web_runner

from .errors import NotFoundError, OcheError, ValidationError

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(
    request: web.Request,
    handler: Handler,
) -> web.StreamResponse:
    """
    Turn errors into JSON bodies.

    @param request: Incoming request
    @param handler: Next handler in the chain
    @return: Handler response, or a JSON error response
    """
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response({"error": "Not found"}, status=404)
    except web.HTTPMethodNotAllowed:
        return web.json_response({"error": "Method not allowed"}, status=405)
    except web.HTTPException:
        raise
    except ValidationError as e:
        return web.json_response({"error": str(e)}, status=400)
    except NotFoundError as e:
        return web.json_response({"error": str(e)}, status=404)
    except OcheError as e:
        logger.error("%s %s failed: %s", request.method, request.path, e)
        return web.json_response({"error": str(e)}, status=500)
    except Exception as e:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response({"error": str(e)}, status=500)


async def read_json(request: web.Request) -> Dict[str, Any]:
    """
    Parse a JSON object request body.

    @param request: Incoming request
    @return: Decoded body, {} when the body is empty
    """
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def create_app(**kwargs: Any) -> web.Application:
    return web.Application(middlewares=[error_middleware], **kwargs)


def enable_cors(app: web.Application) -> None:
    """
    Allow every origin on all routes registered so far.

    @param app: Application whose routes are opened up
    """
    cors = aiohttp_cors.setup(
        app,
        defaults={
            "*": aiohttp_cors.ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*",
            )
        },
    )

    # Add CORS to all routes
    for route in list(app.router.routes()):
        cors.add(route)


async def start_site(
    app: web.Application,
    host: str,
    port: int,
) -> web_runner.AppRunner:
    """
    Start serving an application.

    @param app: Application to serve
    @param host: Host address to bind the server to
    @param port: Port number to use
    @return: AppRunner instance, cleaned up by the caller
    """
    app_runner = web_runner.AppRunner(app)
    await app_runner.setup()

    site = web_runner.TCPSite(app_runner, host, port)
    await site.start()

    logger.info("Listening on http://%s:%d", host, port)
    return app_runner
