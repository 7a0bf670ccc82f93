"""
CoursePay - Payment HTTP Handlers
REST endpoints for course purchases and the VNPay return callback.

Caller identity is established upstream by the auth gateway and arrives as
the X-User-Id / X-User-Role headers.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Optional, Tuple

import structlog
from aiohttp import web

from coursepay.exceptions import (
    AuthenticationRequiredError,
    CoursePayError,
    PermissionDeniedError,
    ValidationError,
)
from coursepay.models import Payment
from coursepay.services.payment import PaymentService

logger = structlog.get_logger(__name__)

SERVICE_KEY = web.AppKey("payment_service", PaymentService)

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"
ADMIN_ROLE = "admin"

payment_routes = web.RouteTableDef()


# ============== Helpers ==============

def success(data: Any, status: int = 200, **extra: Any) -> web.Response:
    body = {"status": "success", **extra, "data": data}
    return web.json_response(body, status=status)


def client_ip(request: web.Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote or "127.0.0.1"


def current_user(request: web.Request) -> Tuple[str, str]:
    """(user_id, role) of the caller, user id normalized to canonical UUID form"""
    raw_user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not raw_user_id:
        raise AuthenticationRequiredError()
    try:
        user_id = str(uuid.UUID(raw_user_id))
    except ValueError as e:
        raise AuthenticationRequiredError("Invalid user identity") from e
    role = request.headers.get(USER_ROLE_HEADER, "student").strip().lower()
    return user_id, role


def require_admin(request: web.Request, action: str) -> str:
    user_id, role = current_user(request)
    if role != ADMIN_ROLE:
        raise PermissionDeniedError(f"Only admins can {action}")
    return user_id


def ensure_can_access(payment: Payment, user_id: str, role: str, action: str) -> None:
    """Users only see their own payments, admins see all"""
    if role != ADMIN_ROLE and payment.user_id != user_id:
        raise PermissionDeniedError(f"You do not have permission to {action} this payment")


async def read_json(request: web.Request, required: bool = True) -> dict:
    if not request.can_read_body:
        if required:
            raise ValidationError("Request body is required")
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def int_query(request: web.Request, name: str, default: int) -> int:
    value = request.query.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer") from e


# ============== Middleware ==============

@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render domain errors in the JSON envelope"""
    try:
        return await handler(request)
    except CoursePayError as e:
        if e.http_status >= 500:
            logger.error("request_failed", path=request.path, error=e.message, error_type=type(e).__name__)
        else:
            logger.info("request_rejected", path=request.path, error=e.message, status=e.http_status)
        return web.json_response(
            {"status": "error", "message": e.message},
            status=e.http_status,
        )
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("unhandled_error", path=request.path, method=request.method)
        return web.json_response(
            {"status": "error", "message": "Internal server error"},
            status=500,
        )


# ============== Public ==============

@payment_routes.get("/api/payments/methods")
async def get_payment_methods(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    return success(service.get_payment_methods())


@payment_routes.get("/api/payments/vnpay-return")
async def handle_vnpay_return(request: web.Request) -> web.Response:
    """Processor return callback; authenticated by its signature only"""
    service = request.app[SERVICE_KEY]
    result = await service.handle_return_callback(dict(request.query))
    return success({"payment": result.to_dict()})


# ============== Authenticated ==============

@payment_routes.post("/api/payments/create")
async def create_payment(request: web.Request) -> web.Response:
    user_id, _ = current_user(request)
    body = await read_json(request)

    course_id = body.get("courseId")
    if not course_id or not isinstance(course_id, str):
        raise ValidationError("courseId is required")
    bank_code = body.get("bankCode") or None
    if bank_code is not None and not isinstance(bank_code, str):
        raise ValidationError("bankCode must be a string")

    service = request.app[SERVICE_KEY]
    result = await service.create_payment_request(
        course_id=course_id,
        user_id=user_id,
        client_ip=client_ip(request),
        bank_code=bank_code,
    )
    return success({"payment": result.to_dict()}, status=201)


@payment_routes.get("/api/payments")
async def get_payment_history(request: web.Request) -> web.Response:
    user_id, _ = current_user(request)
    service = request.app[SERVICE_KEY]

    history = await service.list_payments(
        user_id,
        page=int_query(request, "page", 1),
        limit=int_query(request, "limit", 10),
        status=request.query.get("status") or None,
    )
    payments = [payment.to_dict() for payment in history["payments"]]
    return success(
        {"payments": payments},
        results=len(payments),
        total=history["total"],
        totalPages=history["totalPages"],
        currentPage=history["currentPage"],
    )


@payment_routes.get("/api/payments/stats")
async def get_payment_stats(request: web.Request) -> web.Response:
    require_admin(request, "view payment statistics")
    service = request.app[SERVICE_KEY]
    return success(await service.get_statistics())


@payment_routes.get("/api/payments/{payment_id}")
async def get_payment(request: web.Request) -> web.Response:
    user_id, role = current_user(request)
    service = request.app[SERVICE_KEY]

    payment = await service.get_payment(request.match_info["payment_id"])
    ensure_can_access(payment, user_id, role, "view")
    return success({"payment": payment.to_dict()})


@payment_routes.post("/api/payments/{payment_id}/query")
async def query_payment_status(request: web.Request) -> web.Response:
    user_id, role = current_user(request)
    service = request.app[SERVICE_KEY]

    payment = await service.get_payment(request.match_info["payment_id"])
    ensure_can_access(payment, user_id, role, "query")

    report = await service.query_payment_status(payment.id, client_ip(request))
    return success({"payment": report.to_dict()})


# ============== Admin ==============

@payment_routes.post("/api/payments/{payment_id}/reconcile")
async def reconcile_payment(request: web.Request) -> web.Response:
    admin_id = require_admin(request, "reconcile payments")
    body = await read_json(request, required=False)
    service = request.app[SERVICE_KEY]

    report = await service.reconcile_payment(
        request.match_info["payment_id"],
        client_ip(request),
        include_failed=bool(body.get("includeFailed", False)),
        initiated_by=admin_id,
    )
    return success(report.to_dict())


@payment_routes.post("/api/payments/{payment_id}/refund")
async def refund_payment(request: web.Request) -> web.Response:
    admin_id = require_admin(request, "refund payments")
    body = await read_json(request, required=False)
    service = request.app[SERVICE_KEY]

    amount: Optional[str] = body.get("amount")
    if amount is not None and not isinstance(amount, (str, int, float)):
        raise ValidationError("amount must be a number")

    report = await service.refund_payment(
        request.match_info["payment_id"],
        initiated_by=admin_id,
        client_ip=client_ip(request),
        amount=amount,
    )
    return success({"payment": report.to_dict()})


def create_app(service: PaymentService) -> web.Application:
    """Build the aiohttp application around a payment service"""
    app = web.Application(middlewares=[error_middleware])
    app[SERVICE_KEY] = service
    app.add_routes(payment_routes)
    return app
