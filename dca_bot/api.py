"""
HTTP API (aiohttp.web).

Routes:
    POST /users                              connect wallet (find-or-create)
    POST /plans                              create + schedule a plan
    GET  /plans/{plan_id}                    plan detail
    POST /plans/{plan_id}/stop               stop a plan
    POST /plans/{plan_id}/execute            run one tick now
    GET  /plans/{plan_id}/executions         execution history
    GET  /users/{user_id}/plans              plans of a user
    GET  /users/{user_id}/total-investment   sum of total_invested
    GET  /users/{user_id}/balance            advisory wallet balance
    GET  /health                             liveness + scheduled timer count
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional

from aiohttp import web

from .config import ApiSettings
from .exceptions import DCABotError, NotFoundError, ValidationError
from .service import DCAService

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", DCAService)

MAX_HISTORY_LIMIT = 500


# =============================================================================
# MIDDLEWARE
# =============================================================================

@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render DCABotError subclasses as ``{error, code}`` JSON."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as e:
        return web.json_response(e.to_response(), status=400)
    except NotFoundError as e:
        return web.json_response(e.to_response(), status=404)
    except DCABotError as e:
        logger.error(f"{request.method} {request.path} failed: {e}")
        return web.json_response(e.to_response(), status=500)
    except Exception as e:
        logger.exception(f"Unhandled error in {request.method} {request.path}: {e}")
        return web.json_response(
            {"error": "Internal server error", "code": "GENERAL_001"},
            status=500,
        )


def cors_middleware(allowed_origins: Iterable[str]):
    origins = set(allowed_origins)

    def headers_for(origin: str) -> Dict[str, str]:
        if not origin or not ("*" in origins or origin in origins):
            return {}
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
            "Access-Control-Max-Age": "86400",
        }

    @web.middleware
    async def middleware(request: web.Request, handler) -> web.StreamResponse:
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            return web.Response(status=204, headers=headers_for(origin))

        response = await handler(request)
        response.headers.update(headers_for(origin))
        return response

    return middleware


# =============================================================================
# HELPERS
# =============================================================================

async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _require(body: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if body.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            field_name=missing[0],
        )


def _parse_limit(raw: Optional[str], default: int = 50) -> int:
    if raw is None:
        return default
    try:
        limit = int(raw)
    except ValueError:
        raise ValidationError(f"Invalid limit: {raw!r}", field_name="limit") from None
    if not 1 <= limit <= MAX_HISTORY_LIMIT:
        raise ValidationError(
            f"limit must be between 1 and {MAX_HISTORY_LIMIT}",
            field_name="limit",
        )
    return limit


# =============================================================================
# HANDLERS
# =============================================================================

async def connect_user(request: web.Request) -> web.Response:
    body = await _read_json(request)
    _require(body, "address")
    user = await request.app[SERVICE_KEY].connect_wallet(body["address"])
    return web.json_response(user.to_dict())


async def create_plan(request: web.Request) -> web.Response:
    body = await _read_json(request)
    _require(body, "userId", "amount", "frequency", "toAddress")
    plan = await request.app[SERVICE_KEY].create_plan(
        body["userId"],
        body["amount"],
        body["frequency"],
        body["toAddress"],
    )
    return web.json_response(plan.to_dict())


async def get_plan(request: web.Request) -> web.Response:
    plan = await request.app[SERVICE_KEY].get_plan(request.match_info["plan_id"])
    return web.json_response(plan.to_dict())


async def stop_plan(request: web.Request) -> web.Response:
    plan = await request.app[SERVICE_KEY].stop_plan(request.match_info["plan_id"])
    return web.json_response(plan.to_dict())


async def execute_plan(request: web.Request) -> web.Response:
    outcome = await request.app[SERVICE_KEY].execute_now(request.match_info["plan_id"])
    return web.json_response(outcome.to_dict())


async def plan_executions(request: web.Request) -> web.Response:
    limit = _parse_limit(request.query.get("limit"))
    records = await request.app[SERVICE_KEY].get_execution_history(
        request.match_info["plan_id"],
        limit,
    )
    return web.json_response([r.to_dict() for r in records])


async def user_plans(request: web.Request) -> web.Response:
    plans = await request.app[SERVICE_KEY].get_user_plans(request.match_info["user_id"])
    return web.json_response([p.to_dict() for p in plans])


async def user_total_investment(request: web.Request) -> web.Response:
    total = await request.app[SERVICE_KEY].get_total_investment(request.match_info["user_id"])
    return web.json_response({"totalInvestment": float(total)})


async def user_balance(request: web.Request) -> web.Response:
    result = await request.app[SERVICE_KEY].get_balance(
        request.match_info["user_id"],
        request.query.get("asset", "native"),
    )
    return web.json_response(result)


async def health(request: web.Request) -> web.Response:
    return web.json_response(request.app[SERVICE_KEY].health())


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(service: DCAService, settings: Optional[ApiSettings] = None) -> web.Application:
    settings = settings or ApiSettings()

    app = web.Application(middlewares=[
        cors_middleware(settings.allowed_origins),
        error_middleware,
    ])
    app[SERVICE_KEY] = service

    app.router.add_post("/users", connect_user)
    app.router.add_post("/plans", create_plan)
    app.router.add_get("/plans/{plan_id}", get_plan)
    app.router.add_post("/plans/{plan_id}/stop", stop_plan)
    app.router.add_post("/plans/{plan_id}/execute", execute_plan)
    app.router.add_get("/plans/{plan_id}/executions", plan_executions)
    app.router.add_get("/users/{user_id}/plans", user_plans)
    app.router.add_get("/users/{user_id}/total-investment", user_total_investment)
    app.router.add_get("/users/{user_id}/balance", user_balance)
    app.router.add_get("/health", health)

    return app
