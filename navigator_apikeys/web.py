"""aiohttp integration: bootstrap wiring and a JSON report endpoint.

Usage::

    manager = LifecycleManager(ApiKeySettings.from_env())
    setup_apikeys(app, manager)

    async def handler(request):
        key = await get_manager(request).get_api_key("mapbox", "map-module")
"""
import logging

import orjson
from aiohttp import web

from .manager import LifecycleManager
from .monitoring import REPORT_PERIODS

logger = logging.getLogger("navigator.apikeys.web")

APIKEYS_MANAGER = web.AppKey("apikeys_manager", LifecycleManager)


def _dumps(obj) -> str:
    return orjson.dumps(obj, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")


def get_manager(request: web.Request) -> LifecycleManager:
    """Return the manager registered on the request's application."""
    return request.config_dict[APIKEYS_MANAGER]


async def report_handler(request: web.Request) -> web.Response:
    """GET handler returning ``manager.generate_report()`` as JSON."""
    period = request.query.get("period", "day")
    if period not in REPORT_PERIODS:
        raise web.HTTPBadRequest(
            text=_dumps({"error": f"unknown period {period!r}"}),
            content_type="application/json",
        )
    report = get_manager(request).generate_report(period)
    return web.json_response(report, dumps=_dumps)


async def _on_startup(app: web.Application) -> None:
    await app[APIKEYS_MANAGER].initialize()


async def _on_cleanup(app: web.Application) -> None:
    await app[APIKEYS_MANAGER].stop()


def setup_apikeys(
    app: web.Application,
    manager: LifecycleManager,
    report_path: str = "/api/keys/report",
) -> web.Application:
    """Register the manager on ``app`` and tie it to the app lifecycle.

    Args:
        app: aiohttp application.
        manager: An explicitly constructed LifecycleManager.
        report_path: Route of the JSON report; falsy to skip the route.
    """
    app[APIKEYS_MANAGER] = manager
    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    if report_path:
        app.router.add_get(report_path, report_handler)
    logger.debug("API key manager registered on application (report at %s)", report_path)
    return app
