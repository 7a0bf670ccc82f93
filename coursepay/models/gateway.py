"""
CoursePay - VNPay wire models

Typed request kinds are kept as plain fields and only turned into the
string-keyed parameter set at the signing boundary (``to_params``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo

API_VERSION = "2.1.0"
DATE_FORMAT = "%Y%m%d%H%M%S"

SECURE_HASH_FIELD = "vnp_SecureHash"
SECURE_HASH_TYPE_FIELD = "vnp_SecureHashType"
SIGNATURE_FIELDS = (SECURE_HASH_FIELD, SECURE_HASH_TYPE_FIELD)

SUCCESS_CODE = "00"

# vnp_TransactionType values for refunds
REFUND_PARTIAL = "02"
REFUND_FULL = "03"


def format_vnpay_date(value: datetime) -> str:
    """Render a datetime in the processor's yyyyMMddHHmmss format"""
    return value.strftime(DATE_FORMAT)


def parse_vnpay_date(value: Optional[str], tz: str) -> Optional[datetime]:
    """Parse yyyyMMddHHmmss in the processor timezone, None if malformed"""
    if not value:
        return None
    try:
        return datetime.strptime(value, DATE_FORMAT).replace(tzinfo=ZoneInfo(tz))
    except ValueError:
        return None


@dataclass(frozen=True)
class GatewaySettings:
    """Read-only processor configuration, built once at startup"""
    tmn_code: str
    hash_secret: str
    payment_url: str
    return_url: str
    api_url: str
    currency: str = "VND"
    locale: str = "vn"
    timezone: str = "Asia/Ho_Chi_Minh"
    timeout: float = 30.0
    expire_minutes: int = 15

    def missing(self) -> list[str]:
        """Names of required settings that are empty"""
        required = {
            "VNPAY_TMN_CODE": self.tmn_code,
            "VNPAY_HASH_SECRET": self.hash_secret,
            "VNPAY_URL": self.payment_url,
            "VNPAY_RETURN_URL": self.return_url,
            "VNPAY_API_URL": self.api_url,
        }
        return [name for name, value in required.items() if not value]

    @property
    def secret_bytes(self) -> bytes:
        return self.hash_secret.encode("utf-8")


@dataclass
class PaymentInitiation:
    """Parameters of a `pay` redirect (vnp_Command=pay)"""
    tmn_code: str
    order_reference: str
    amount_minor: int
    description: str
    order_type: str
    return_url: str
    client_ip: str
    currency: str
    locale: str
    create_date: str
    expire_date: str
    bank_code: Optional[str] = None

    def to_params(self) -> Dict[str, str]:
        params = {
            "vnp_Version": API_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Locale": self.locale,
            "vnp_CurrCode": self.currency,
            "vnp_TxnRef": self.order_reference,
            "vnp_OrderInfo": self.description,
            "vnp_OrderType": self.order_type,
            "vnp_Amount": str(self.amount_minor),
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": self.client_ip,
            "vnp_CreateDate": self.create_date,
            "vnp_ExpireDate": self.expire_date,
        }
        if self.bank_code:
            params["vnp_BankCode"] = self.bank_code
        return params


@dataclass
class StatusQuery:
    """Parameters of a `querydr` API call"""
    request_id: str
    tmn_code: str
    order_reference: str
    transaction_date: str
    create_date: str
    client_ip: str

    def to_params(self) -> Dict[str, str]:
        return {
            "vnp_RequestId": self.request_id,
            "vnp_Version": API_VERSION,
            "vnp_Command": "querydr",
            "vnp_TmnCode": self.tmn_code,
            "vnp_TxnRef": self.order_reference,
            "vnp_OrderInfo": f"Query transaction {self.order_reference}",
            "vnp_TransactionDate": self.transaction_date,
            "vnp_CreateDate": self.create_date,
            "vnp_IpAddr": self.client_ip,
        }


@dataclass
class RefundRequest:
    """Parameters of a `refund` API call"""
    request_id: str
    tmn_code: str
    order_reference: str
    amount_minor: int
    transaction_id: str
    transaction_date: str
    create_date: str
    initiated_by: str
    client_ip: str
    transaction_type: str = REFUND_PARTIAL

    def to_params(self) -> Dict[str, str]:
        return {
            "vnp_RequestId": self.request_id,
            "vnp_Version": API_VERSION,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.tmn_code,
            "vnp_TransactionType": self.transaction_type,
            "vnp_TxnRef": self.order_reference,
            "vnp_Amount": str(self.amount_minor),
            "vnp_OrderInfo": f"Refund for order {self.order_reference}",
            "vnp_TransactionNo": self.transaction_id,
            "vnp_TransactionDate": self.transaction_date,
            "vnp_CreateDate": self.create_date,
            "vnp_CreateBy": self.initiated_by,
            "vnp_IpAddr": self.client_ip,
        }


@dataclass
class ReturnParams:
    """Typed view over an inbound return callback.

    ``raw`` keeps every received parameter; the signature is always checked
    against it, never against the typed fields.
    """
    order_reference: str
    response_code: str
    amount_minor: Optional[int] = None
    bank_code: Optional[str] = None
    bank_transaction_no: Optional[str] = None
    card_type: Optional[str] = None
    order_info: Optional[str] = None
    pay_date: Optional[str] = None
    tmn_code: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None
    raw: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "ReturnParams":
        """Create from a raw query-string mapping"""
        raw = {str(k): str(v) for k, v in params.items() if v is not None}
        amount = raw.get("vnp_Amount")
        try:
            amount_minor = int(amount) if amount else None
        except ValueError:
            amount_minor = None
        return cls(
            order_reference=raw.get("vnp_TxnRef", ""),
            response_code=raw.get("vnp_ResponseCode", ""),
            amount_minor=amount_minor,
            bank_code=raw.get("vnp_BankCode"),
            bank_transaction_no=raw.get("vnp_BankTranNo"),
            card_type=raw.get("vnp_CardType"),
            order_info=raw.get("vnp_OrderInfo"),
            pay_date=raw.get("vnp_PayDate"),
            tmn_code=raw.get("vnp_TmnCode"),
            transaction_id=raw.get("vnp_TransactionNo"),
            transaction_status=raw.get("vnp_TransactionStatus"),
            raw=raw,
        )


@dataclass
class GatewayResponse:
    """Result of an out-of-band call to the processor.

    ``success`` means the processor answered; ``status_unknown`` means it did
    not (timeout, network error, unreadable body) and nothing can be
    concluded about the payment.
    """
    success: bool
    response_code: Optional[str] = None
    transaction_status: Optional[str] = None
    message: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_minor: Optional[int] = None
    pay_date: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

    @property
    def status_unknown(self) -> bool:
        return not self.success

    @property
    def is_paid(self) -> bool:
        """Processor confirms the original transaction settled"""
        return (
            self.success
            and self.response_code == SUCCESS_CODE
            and self.transaction_status == SUCCESS_CODE
        )

    @property
    def is_accepted(self) -> bool:
        """Processor accepted the request itself (used for refunds)"""
        return self.success and self.response_code == SUCCESS_CODE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "statusUnknown": self.status_unknown,
            "responseCode": self.response_code,
            "transactionStatus": self.transaction_status,
            "message": self.message,
            "transactionId": self.transaction_id,
            "amountMinor": self.amount_minor,
            "payDate": self.pay_date,
            "error": self.error,
        }
