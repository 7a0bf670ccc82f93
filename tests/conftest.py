"""
Pytest configuration for CoursePay tests

Configures:
- pytest-asyncio for async tests
- In-memory payment store honoring the transactional unit-of-work contract
- VNPay settings, client and signed callback helpers
"""
import asyncio
import dataclasses
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

import httpx
import pytest
import pytest_asyncio

from coursepay.exceptions import EnrollmentInsertError, PendingPaymentExistsError
from coursepay.models import Course, GatewaySettings, Payment, PaymentOutcome, PaymentStatus
from coursepay.services.database import check_transition
from coursepay.services.signing import sign
from coursepay.services.vnpay import VNPayClient

# Configure pytest-asyncio to auto-detect async tests
pytest_plugins = ('pytest_asyncio',)

TZ = ZoneInfo("Asia/Ho_Chi_Minh")
FIXED_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=TZ)

USER_ID = "3f0c9a52-6c1e-4d8f-9a5b-1b2c3d4e5f60"
OTHER_USER_ID = "a1b2c3d4-0000-4000-8000-0000000000aa"
COURSE_ID = "7d9e1f20-3a4b-4c5d-8e6f-708192a3b4c5"
TEST_SECRET = "TESTSECRETKEY1234567890"


def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# ============== In-memory store ==============

class FakeTransaction:
    """Unit of work staging writes until the transaction commits"""

    def __init__(self, store: "FakePaymentStore") -> None:
        self.store = store
        self.locks: List[asyncio.Lock] = []
        self.payments: Dict[str, Payment] = {}
        self.enrollments: Set[Tuple[str, str]] = set()
        self.logs: List[dict] = []

    async def _lock(self, payment_id: Optional[str]) -> Optional[Payment]:
        if payment_id is None or payment_id not in self.store.payments:
            return None
        lock = self.store.row_locks.setdefault(payment_id, asyncio.Lock())
        if lock not in self.locks:
            await lock.acquire()
            self.locks.append(lock)
        await asyncio.sleep(0)
        return self.payments.get(payment_id) or self.store.payments[payment_id]

    async def lock_payment(self, order_reference: str) -> Optional[Payment]:
        return await self._lock(self.store.refs.get(order_reference))

    async def lock_payment_by_id(self, payment_id: str) -> Optional[Payment]:
        return await self._lock(payment_id)

    async def insert_enrollment(self, user_id: str, course_id: str) -> None:
        self.store.enrollment_attempts += 1
        if self.store.fail_enrollment:
            raise EnrollmentInsertError("insert or update on table \"enrollments\" violates foreign key constraint")
        key = (user_id, course_id)
        if key in self.store.enrollments or key in self.enrollments:
            raise EnrollmentInsertError("duplicate key value violates unique constraint \"enrollments_user_id_course_id_key\"")
        self.enrollments.add(key)

    async def record_outcome(
        self,
        payment: Payment,
        outcome: PaymentOutcome,
        action: str = "callback",
        created_by: Optional[str] = None,
    ) -> Payment:
        check_transition(payment.status, outcome.status)
        updated = dataclasses.replace(
            payment,
            status=outcome.status,
            transaction_id=outcome.transaction_id or payment.transaction_id,
            response_code=outcome.response_code or payment.response_code,
            paid_at=outcome.paid_at or payment.paid_at,
            bank_code=outcome.bank_code or payment.bank_code,
            card_type=outcome.card_type or payment.card_type,
            updated_at=self.store.now,
        )
        self.payments[payment.id] = updated
        await self.log_transition(payment.id, action, payment.status, outcome.status, created_by=created_by)
        return updated

    async def mark_refunded(self, payment: Payment, amount: Decimal, created_by: Optional[str] = None) -> Payment:
        check_transition(payment.status, PaymentStatus.REFUNDED)
        updated = dataclasses.replace(
            payment,
            status=PaymentStatus.REFUNDED,
            refund_amount=amount,
            refunded_at=self.store.now,
            updated_at=self.store.now,
        )
        self.payments[payment.id] = updated
        await self.log_transition(payment.id, "refund", payment.status, PaymentStatus.REFUNDED, created_by=created_by)
        return updated

    async def cancel_pending_before(self, created_before: datetime) -> List[Payment]:
        cancelled = []
        for payment in list(self.store.payments.values()):
            if payment.status is PaymentStatus.PENDING and payment.created_at < created_before:
                updated = dataclasses.replace(payment, status=PaymentStatus.CANCELLED, updated_at=self.store.now)
                self.payments[payment.id] = updated
                cancelled.append(updated)
        return cancelled

    async def log_transition(self, payment_id, action, old_status, new_status, details=None, created_by=None) -> None:
        self.logs.append({
            "payment_id": payment_id,
            "action": action,
            "old_status": old_status,
            "new_status": new_status,
            "created_by": created_by,
        })


class FakePaymentStore:
    """Dict-backed PaymentStore; tests can inspect committed state directly"""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now
        self.courses: Dict[str, Course] = {}
        self.payments: Dict[str, Payment] = {}
        self.refs: Dict[str, str] = {}
        self.enrollments: Set[Tuple[str, str]] = set()
        self.logs: List[dict] = []
        self.row_locks: Dict[str, asyncio.Lock] = {}
        self.fail_enrollment = False
        self.enrollment_attempts = 0
        self.commits = 0
        self.rollbacks = 0

    # Setup helpers

    def add_course(self, course_id: str = COURSE_ID, price="49.99", status: str = "published", title: str = "Python cơ bản") -> Course:
        course = Course(id=course_id, title=title, price=Decimal(str(price)), status=status)
        self.courses[course_id] = course
        return course

    def add_payment(self, **overrides) -> Payment:
        values = dict(
            id=str(uuid.uuid4()),
            user_id=USER_ID,
            course_id=COURSE_ID,
            order_reference=f"ORDER_1705289400000_4e5f60_{uuid.uuid4().hex[:6]}",
            amount=Decimal("49.99"),
            currency="VND",
            payment_method="vnpay",
            status=PaymentStatus.PENDING,
            created_at=self.now,
            updated_at=self.now,
        )
        values.update(overrides)
        payment = Payment(**values)
        self.payments[payment.id] = payment
        self.refs[payment.order_reference] = payment.id
        return payment

    # PaymentStore interface

    @asynccontextmanager
    async def transaction(self):
        tx = FakeTransaction(self)
        try:
            yield tx
        except BaseException:
            self.rollbacks += 1
            raise
        else:
            self.payments.update(tx.payments)
            self.enrollments |= tx.enrollments
            self.logs.extend(tx.logs)
            self.commits += 1
        finally:
            for lock in tx.locks:
                lock.release()

    async def get_course(self, course_id: str) -> Optional[Course]:
        return self.courses.get(course_id)

    async def has_enrollment(self, user_id: str, course_id: str) -> bool:
        return (user_id, course_id) in self.enrollments

    async def has_pending_payment(self, user_id: str, course_id: str) -> bool:
        return any(
            p.user_id == user_id and p.course_id == course_id and p.status is PaymentStatus.PENDING
            for p in self.payments.values()
        )

    async def create_payment(self, user_id, course_id, order_reference, amount, currency, payment_method="vnpay") -> Payment:
        if await self.has_pending_payment(user_id, course_id):
            raise PendingPaymentExistsError()
        return self.add_payment(
            user_id=user_id,
            course_id=course_id,
            order_reference=order_reference,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
        )

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.payments.get(payment_id)

    async def get_payment_by_order_reference(self, order_reference: str) -> Optional[Payment]:
        await asyncio.sleep(0)
        payment_id = self.refs.get(order_reference)
        return self.payments.get(payment_id) if payment_id else None

    async def list_payments(self, user_id, limit=10, offset=0, status=None):
        rows = [
            p for p in self.payments.values()
            if p.user_id == user_id and (status is None or p.status is status)
        ]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def cancel_expired(self, created_before: datetime) -> List[Payment]:
        async with self.transaction() as tx:
            return await tx.cancel_pending_before(created_before)

    async def get_statistics(self) -> dict:
        completed = [p for p in self.payments.values() if p.status is PaymentStatus.COMPLETED]
        return {
            "summary": {
                "totalPayments": len(self.payments),
                "successfulPayments": len(completed),
                "totalRevenue": str(sum((p.amount for p in completed), Decimal("0"))),
            },
            "trends": [],
            "topCourses": [],
        }


# ============== Fixtures ==============

@pytest.fixture
def gateway_settings() -> GatewaySettings:
    return GatewaySettings(
        tmn_code="TESTTMN1",
        hash_secret=TEST_SECRET,
        payment_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        return_url="http://localhost:3000/payment/vnpay-return",
        api_url="https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
    )


@pytest.fixture
def processor_requests() -> list:
    """Bodies of every request that reached the mocked processor API"""
    return []


@pytest.fixture
def processor_handler():
    """Replace in a test to change what the mocked processor API answers"""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "vnp_ResponseCode": "00",
            "vnp_Message": "QueryDR Success",
            "vnp_TransactionNo": "14226112",
            "vnp_TransactionStatus": "00",
            "vnp_Amount": "4999",
            "vnp_PayDate": "20240115103500",
        })
    return handler


@pytest_asyncio.fixture
async def vnpay_client(gateway_settings, processor_handler, processor_requests):
    def transport_handler(request: httpx.Request) -> httpx.Response:
        processor_requests.append(request)
        return processor_handler(request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(transport_handler))
    client = VNPayClient(gateway_settings, client=http_client, clock=lambda: FIXED_NOW)
    yield client
    await http_client.aclose()


@pytest.fixture
def store() -> FakePaymentStore:
    return FakePaymentStore()


def signed_callback(payment: Payment, response_code: str = "00", secret: str = TEST_SECRET, **overrides) -> dict:
    """Return callback parameters as the processor would send them"""
    params = {
        "vnp_Amount": str(int(payment.amount * 100)),
        "vnp_BankCode": "NCB",
        "vnp_BankTranNo": "VNP14226112",
        "vnp_CardType": "ATM",
        "vnp_OrderInfo": "Thanh toan khoa hoc: Python cơ bản",
        "vnp_PayDate": "20240115103500",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": "TESTTMN1",
        "vnp_TransactionNo": "14226112",
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": payment.order_reference,
    }
    params.update(overrides)
    params["vnp_SecureHashType"] = "HmacSHA512"
    params["vnp_SecureHash"] = sign(params, secret.encode("utf-8"))
    return params
