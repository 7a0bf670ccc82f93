"""
CoursePay - VNPay processor client

Builds signed payment redirects, verifies return callbacks and performs the
out-of-band `querydr` / `refund` calls used for reconciliation.
API Documentation: sandbox.vnpayment.vn/apis
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Union
from zoneinfo import ZoneInfo

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from coursepay.exceptions import ConfigurationError, InvalidAmountError, ServiceError
from coursepay.models.gateway import (
    REFUND_FULL,
    REFUND_PARTIAL,
    SECURE_HASH_FIELD,
    GatewayResponse,
    GatewaySettings,
    PaymentInitiation,
    RefundRequest,
    StatusQuery,
    format_vnpay_date,
)
from coursepay.services.base import BaseService
from coursepay.services.signing import canonical_query, sign, verify_signature

Amount = Union[Decimal, int, float, str]


def to_minor_units(amount: Amount) -> int:
    """
    Convert a major-unit amount to the processor's integer minor units (x100).

    Floats go through ``str`` first so 49.99 stays 4999. Negative, NaN and
    infinite amounts are rejected.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise InvalidAmountError(f"Amount must be a non-negative number: {amount!r}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"))


class VNPayClient(BaseService):
    """VNPay Payment API Client"""

    service_name = "vnpay"

    CMD_PAY = "pay"
    CMD_QUERY = "querydr"
    CMD_REFUND = "refund"

    def __init__(
        self,
        settings: GatewaySettings,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(client, timeout=httpx.Timeout(settings.timeout, connect=5.0))
        self.settings = settings
        self._tz = ZoneInfo(settings.timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))

    def is_configured(self) -> bool:
        """Check if the processor settings are complete"""
        return not self.settings.missing()

    def _require_configured(self) -> None:
        missing = self.settings.missing()
        if missing:
            raise ConfigurationError(f"Payment processor not configured: {', '.join(missing)}")

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def _processor_date(self, value: datetime) -> str:
        if value.tzinfo is not None:
            value = value.astimezone(self._tz)
        return format_vnpay_date(value)

    # ==================== Payment redirect ====================

    def build_payment_url(
        self,
        order_reference: str,
        amount: Amount,
        description: str,
        client_ip: str,
        bank_code: Optional[str] = None,
        locale: Optional[str] = None,
        order_type: str = "billpayment",
    ) -> str:
        """
        Build the signed redirect URL for the hosted payment page.

        Raises:
            ConfigurationError: processor settings are incomplete
            InvalidAmountError: amount is negative or not a number
        """
        self._require_configured()
        amount_minor = to_minor_units(amount)
        now = self._now()

        request = PaymentInitiation(
            tmn_code=self.settings.tmn_code,
            order_reference=order_reference,
            amount_minor=amount_minor,
            description=description,
            order_type=order_type,
            return_url=self.settings.return_url,
            client_ip=client_ip,
            currency=self.settings.currency,
            locale=locale or self.settings.locale,
            create_date=format_vnpay_date(now),
            expire_date=format_vnpay_date(now + timedelta(minutes=self.settings.expire_minutes)),
            bank_code=bank_code,
        )
        params = request.to_params()
        query = canonical_query(params)
        secure_hash = sign(params, self.settings.secret_bytes)

        self.logger.info(
            "payment_url_created",
            order_reference=order_reference,
            amount_minor=amount_minor,
            bank_code=bank_code,
        )
        return f"{self.settings.payment_url}?{query}&{SECURE_HASH_FIELD}={secure_hash}"

    # ==================== Return callback ====================

    def verify_return(self, params: Mapping[str, Any]) -> bool:
        """Verify the signature of a return callback"""
        is_valid = verify_signature(params, self.settings.secret_bytes)
        self.logger.info(
            "return_verified",
            order_reference=params.get("vnp_TxnRef"),
            transaction_id=params.get("vnp_TransactionNo"),
            response_code=params.get("vnp_ResponseCode"),
            is_valid=is_valid,
        )
        return is_valid

    # ==================== Reconciliation API ====================

    def _signed_body(self, params: Dict[str, str]) -> Dict[str, str]:
        body = dict(params)
        body[SECURE_HASH_FIELD] = sign(params, self.settings.secret_bytes)
        return body

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _post_with_retry(self, body: Dict[str, str]) -> httpx.Response:
        return await self._post(self.settings.api_url, json=body)

    async def _call(self, cmd: str, body: Dict[str, str], retry_connect: bool) -> GatewayResponse:
        """POST a signed body; failures to get an answer become status-unknown results"""
        order_reference = body.get("vnp_TxnRef")
        try:
            if retry_connect:
                response = await self._post_with_retry(body)
            else:
                response = await self._post(self.settings.api_url, json=body)
            result = response.json()
        except (ServiceError, httpx.HTTPError) as e:
            self.logger.error(
                "processor_call_failed",
                cmd=cmd,
                order_reference=order_reference,
                error=str(e),
            )
            return GatewayResponse(success=False, error=str(e))
        except json.JSONDecodeError as e:
            self.logger.error("processor_invalid_json", cmd=cmd, order_reference=order_reference)
            return GatewayResponse(success=False, error=f"Invalid JSON response: {e}")

        if not isinstance(result, dict):
            return GatewayResponse(success=False, error="Unexpected response body", raw={"body": result})

        amount = result.get("vnp_Amount")
        gateway_response = GatewayResponse(
            success=True,
            response_code=_opt_str(result.get("vnp_ResponseCode")),
            transaction_status=_opt_str(result.get("vnp_TransactionStatus")),
            message=result.get("vnp_Message"),
            transaction_id=_opt_str(result.get("vnp_TransactionNo")),
            amount_minor=int(amount) if amount not in (None, "") and str(amount).isdigit() else None,
            pay_date=_opt_str(result.get("vnp_PayDate")),
            raw=result,
        )
        self.logger.info(
            "processor_call_result",
            cmd=cmd,
            order_reference=order_reference,
            transaction_id=gateway_response.transaction_id,
            response_code=gateway_response.response_code,
            transaction_status=gateway_response.transaction_status,
        )
        return gateway_response

    async def query_status(
        self,
        order_reference: str,
        transaction_date: datetime,
        client_ip: str,
    ) -> GatewayResponse:
        """
        Ask the processor for the authoritative status of a transaction.

        API: querydr. Read-only, so connection errors are retried.
        """
        self._require_configured()
        query = StatusQuery(
            request_id=uuid.uuid4().hex,
            tmn_code=self.settings.tmn_code,
            order_reference=order_reference,
            transaction_date=self._processor_date(transaction_date),
            create_date=format_vnpay_date(self._now()),
            client_ip=client_ip,
        )
        return await self._call(self.CMD_QUERY, self._signed_body(query.to_params()), retry_connect=True)

    async def refund(
        self,
        order_reference: str,
        amount: Amount,
        transaction_id: str,
        transaction_date: datetime,
        initiated_by: str,
        client_ip: str,
        full: bool = False,
    ) -> GatewayResponse:
        """
        Request a refund for a settled transaction.

        API: refund. Never retried: a lost answer is reported as unknown and
        must be settled with query_status.
        """
        self._require_configured()
        request = RefundRequest(
            request_id=uuid.uuid4().hex,
            tmn_code=self.settings.tmn_code,
            order_reference=order_reference,
            amount_minor=to_minor_units(amount),
            transaction_id=transaction_id,
            transaction_date=self._processor_date(transaction_date),
            create_date=format_vnpay_date(self._now()),
            initiated_by=initiated_by,
            client_ip=client_ip,
            transaction_type=REFUND_FULL if full else REFUND_PARTIAL,
        )
        return await self._call(self.CMD_REFUND, self._signed_body(request.to_params()), retry_connect=False)


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
