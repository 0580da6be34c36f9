from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, TypedDict
import base64
import hashlib
import hmac
import json
import uuid

from .errors import AuthenticationFailed, InvalidRequest

SIGNATURE_HEADER = "x-mockpay-signature"


# ----------------------------
# Notification as seen by the reconciler
# ----------------------------
@dataclass(frozen=True)
class PaymentNotification:
    kind: str  # "succeeded" | "failed" | "canceled"
    session_ref: str
    buyer_id: Optional[str]
    event_id: Optional[str]
    amount: Optional[int]
    currency: Optional[str]
    payment_reference: Optional[str]
    idempotency_key: Optional[str]
    raw: str

    @property
    def succeeded(self) -> bool:
        return self.kind == "succeeded"


class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def create_session_id_and_url(self) -> CreateSessionResult: ...

    # raises AuthenticationFailed, never returns an unverified event
    @abstractmethod
    def verify_webhook(
            self, payload: bytes, headers: dict
    ) -> PaymentNotification: ...

    @abstractmethod
    async def refund(self, payment_reference: str, amount: int) -> str: ...


class TransferAdapter(ABC):
    """Moves held funds to an organizer."""

    # idempotency_key lets the processor drop a repeated transfer
    @abstractmethod
    async def transfer(self, organizer_id: str, amount: int, currency: str,
                       idempotency_key: str) -> str: ...


# ----------------------------
# MockPay implementation
# ----------------------------
def sign_payload(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def mock_event(kind: str, *, session_ref: str, buyer_id: str, event_id: str,
               amount: int, currency: str = "eur",
               idempotency_key: Optional[str] = None,
               created_at: Optional[float] = None) -> dict:
    return {
        "type": f"payment.{kind}",
        "payment_session_id": session_ref,
        "buyer_id": buyer_id,
        "event_id": event_id,
        "amount": amount,
        "currency": currency,
        "payment_reference": f"pi_{uuid.uuid4().hex}",
        "created_at": created_at,
        "idempotency_key": idempotency_key or f"evt_{uuid.uuid4().hex}",
    }


class MockPay(PaymentAdapter):

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def sign(self, payload: bytes) -> dict:
        return {
            SIGNATURE_HEADER: sign_payload(payload, self.secret),
            "content-type": "application/json",
        }

    def create_session_id_and_url(self) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    def verify_webhook(
            self, payload: bytes, headers: dict
    ) -> PaymentNotification:
        headers = {k.lower(): v for k, v in headers.items()}
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign_payload(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise AuthenticationFailed()
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRequest("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidRequest("Invalid JSON")
        return self.parse_event(event, payload.decode())

    @staticmethod
    def parse_event(event: dict, raw: str) -> PaymentNotification:
        kind = str(event.get("type", "")).split(".")[-1]
        if kind not in ("succeeded", "failed", "canceled"):
            raise InvalidRequest(f"unsupported event type {event.get('type')!r}")
        psid = event.get("payment_session_id") or ""
        if not psid:
            raise InvalidRequest("missing payment_session_id")
        amount = event.get("amount")
        return PaymentNotification(
            kind=kind,
            session_ref=psid,
            buyer_id=event.get("buyer_id"),
            event_id=event.get("event_id"),
            amount=int(amount) if amount is not None else None,
            currency=event.get("currency"),
            payment_reference=event.get("payment_reference"),
            idempotency_key=event.get("idempotency_key"),
            raw=raw,
        )

    async def refund(self, payment_reference: str, amount: int) -> str:
        return f"re_{uuid.uuid4().hex}"


class MockTransfers(TransferAdapter):

    def __init__(self) -> None:
        # idempotency_key -> transfer id, like a processor would keep it
        self._seen: dict[str, str] = {}

    async def transfer(self, organizer_id: str, amount: int, currency: str,
                       idempotency_key: str) -> str:
        if amount < 0:
            raise ValueError("transfer amount must not be negative")
        ref = self._seen.get(idempotency_key)
        if ref is None:
            ref = f"tr_{uuid.uuid4().hex}"
            self._seen[idempotency_key] = ref
        return ref
