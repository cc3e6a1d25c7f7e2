"""Small HTTP control surface used by the dashboard."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from aiohttp import web

from .errors import (
    ConnectionLost,
    InvalidConfiguration,
    InvalidCredential,
    NoValidSource,
    RelayError,
    ServiceNotFound,
)
from .orchestrator import ServiceOrchestrator

logger = logging.getLogger(__name__)

__all__ = ["ORCHESTRATOR_KEY", "create_control_app"]

ORCHESTRATOR_KEY = web.AppKey("orchestrator", ServiceOrchestrator)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


@web.middleware
async def _error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except InvalidCredential as exc:
        return _error(401, str(exc))
    except ConnectionLost as exc:
        return _error(409, str(exc))
    except (NoValidSource, InvalidConfiguration) as exc:
        return _error(422, str(exc))
    except ServiceNotFound as exc:
        return _error(404, str(exc))
    except RelayError as exc:
        logger.exception("Control request %s %s failed", request.method, request.path)
        return _error(500, str(exc))


routes = web.RouteTableDef()


@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    return web.json_response(orchestrator.health())


@routes.post("/tenants/{tenant}/services/start")
async def start_tenant_services(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    report = await orchestrator.start_tenant_services(request.match_info["tenant"])
    return web.json_response({"success": not report.failed, **report.to_json()})


@routes.post("/tenants/{tenant}/services/stop")
async def stop_tenant_services(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    stopped = await orchestrator.stop_tenant_services(request.match_info["tenant"])
    return web.json_response({"success": True, "stopped": stopped})


@routes.post("/tenants/{tenant}/services/{service}/start")
async def start_service(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    runtime = await orchestrator.start_service(
        request.match_info["tenant"], request.match_info["service"]
    )
    return web.json_response({"success": True, "service_id": runtime.service_id})


@routes.post("/tenants/{tenant}/services/{service}/stop")
async def stop_service(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    stopped = await orchestrator.stop_service(
        request.match_info["tenant"], request.match_info["service"]
    )
    return web.json_response({"success": True, "stopped": stopped})


@routes.delete("/services/{service}/message-map")
async def delete_message_map(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    deleted = await orchestrator.delete_service_map(request.match_info["service"])
    return web.json_response({"success": True, "deleted": deleted})


def create_control_app(orchestrator: ServiceOrchestrator) -> web.Application:
    app = web.Application(middlewares=[_error_middleware])
    app[ORCHESTRATOR_KEY] = orchestrator
    app.add_routes(routes)
    return app
