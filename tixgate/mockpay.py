from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, TypedDict
from fastapi import HTTPException
import time
import uuid
import hmac
import hashlib
import base64
import json

from . import config
from .helpers import ct_equal


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class SessionInfo(TypedDict):
    id: str
    payment_status: str  # paid | unpaid
    status: str  # open | complete | expired
    amount_total: int
    currency: str
    metadata: Dict[str, str]


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_session(
        self, *, order_id: str, amount: int, currency: str
    ) -> CreateSessionResult: ...

    # poll fallback for reconciliation sweeps; None if the provider does not
    # know the session
    @abstractmethod
    async def retrieve_session(self, psid: str) -> Optional[SessionInfo]: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | "expired"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, event_id)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    # (amount, currency, metadata order id)
    @abstractmethod
    def event_payment(
        self, event: dict
    ) -> Tuple[Optional[int], Optional[str], Optional[str]]:
        ...


def sign(payload: bytes, secret: str = None) -> str:
    secret = secret or config.MOCK_SECRET
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for a card provider. Sessions live in memory, which
    is enough for one server process and for tests.
    """

    def __init__(self, secret: str = None, base_url: str = None) -> None:
        self.secret = secret or config.MOCK_SECRET
        self.base_url = (
            config.PUBLIC_BASE_URL if base_url is None else base_url
        )
        self._sessions: Dict[str, SessionInfo] = {}

    async def create_session(
        self, *, order_id: str, amount: int, currency: str
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        self._sessions[psid] = {
            "id": psid,
            "payment_status": "unpaid",
            "status": "open",
            "amount_total": int(amount),
            "currency": currency.lower(),
            "metadata": {"order_id": order_id},
        }
        redirect_url = f"{self.base_url}/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    async def retrieve_session(self, psid: str) -> Optional[SessionInfo]:
        s = self._sessions.get(psid)
        return dict(s) if s else None

    def session(self, psid: str) -> Optional[SessionInfo]:
        return self._sessions.get(psid)

    def settle(self, psid: str, kind: str, **overrides) -> dict:
        """
        Move a session to its final state and build the event the provider
        would deliver. `overrides` patch the event (amount, currency, ...),
        which is how tests forge inconsistent confirmations.
        """
        s = self._sessions.get(psid)
        if s is None:
            raise KeyError(psid)
        if kind == "succeeded":
            s["payment_status"] = "paid"
            s["status"] = "complete"
        elif kind == "expired":
            s["status"] = "expired"
        else:
            s["status"] = "complete"
        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "amount": s["amount_total"],
            "currency": s["currency"],
            "metadata": dict(s["metadata"]),
            "created_at": int(time.time()),
        }
        event.update(overrides)
        return event

    def signed(self, event: dict) -> Tuple[bytes, Dict[str, str]]:
        payload = json.dumps(event).encode()
        return payload, {
            "x-mockpay-signature": sign(payload, self.secret),
            "content-type": "application/json",
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = sign(payload, self.secret)
        if not sig or not ct_equal(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("id")
        )

    def event_payment(
        self, event: dict
    ) -> Tuple[Optional[int], Optional[str], Optional[str]]:
        amount = event.get("amount")
        return (
            int(amount) if amount is not None else None,
            event.get("currency"),
            (event.get("metadata") or {}).get("order_id"),
        )
