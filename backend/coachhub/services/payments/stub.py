from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from ...core.errors import AlreadyCancelled, AlreadyCaptured, GatewayError
from .gateway import Authorization, BasePaymentGateway


@dataclass(slots=True)
class StubIntent:
    gateway_ref: str
    amount_cents: int
    currency: str
    destination_account_id: str | None
    metadata: dict[str, Any]
    status: str = "requires_capture"
    refunded_cents: int = 0
    refunds: list[str] = field(default_factory=list)


class StubGateway(BasePaymentGateway):
    """In-memory gateway with processor-like idempotency and failure injection.

    ``fail_next(operation, error)`` makes the next call of that operation raise,
    which lets callers exercise timeout and rejection paths.
    """

    def __init__(self, settings) -> None:
        super().__init__(settings)
        self._lock = threading.Lock()
        self.intents: dict[str, StubIntent] = {}
        self._by_key: dict[str, str] = {}
        self._failures: dict[str, Exception] = {}
        self.calls: dict[str, int] = {
            "create_authorization": 0,
            "capture": 0,
            "cancel_authorization": 0,
            "refund": 0,
        }

    def fail_next(self, operation: str, error: Exception | None = None) -> None:
        with self._lock:
            self._failures[operation] = error or GatewayError(detail="card_declined")

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        failure = self._failures.pop(operation, None)
        if failure is not None:
            raise failure

    def _intent(self, gateway_ref: str) -> StubIntent:
        intent = self.intents.get(gateway_ref)
        if intent is None:
            raise GatewayError(detail=f"No such payment intent {gateway_ref}")
        return intent

    def create_authorization(
        self,
        amount_cents: int,
        currency: str,
        destination_account_id: str | None,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> Authorization:
        with self._lock:
            self._enter("create_authorization")
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                intent = self.intents[existing]
            else:
                if amount_cents <= 0:
                    raise GatewayError(detail="amount_too_small")
                intent = StubIntent(
                    gateway_ref=f"pi_stub_{uuid.uuid4().hex[:16]}",
                    amount_cents=amount_cents,
                    currency=currency,
                    destination_account_id=destination_account_id,
                    metadata=dict(metadata),
                )
                self.intents[intent.gateway_ref] = intent
                self._by_key[idempotency_key] = intent.gateway_ref
            return Authorization(
                gateway_ref=intent.gateway_ref,
                client_secret=f"{intent.gateway_ref}_secret",
                status=intent.status,
            )

    def capture(self, gateway_ref: str, idempotency_key: str | None = None) -> str:
        with self._lock:
            self._enter("capture")
            intent = self._intent(gateway_ref)
            if intent.status == "succeeded":
                raise AlreadyCaptured(detail=gateway_ref)
            if intent.status == "canceled":
                raise AlreadyCancelled(detail=gateway_ref)
            intent.status = "succeeded"
            return intent.status

    def cancel_authorization(self, gateway_ref: str, idempotency_key: str | None = None) -> str:
        with self._lock:
            self._enter("cancel_authorization")
            intent = self._intent(gateway_ref)
            if intent.status == "succeeded":
                raise AlreadyCaptured(detail=gateway_ref)
            intent.status = "canceled"
            return intent.status

    def refund(
        self,
        gateway_ref: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        with self._lock:
            self._enter("refund")
            intent = self._intent(gateway_ref)
            if intent.status != "succeeded":
                raise GatewayError(detail=f"Payment {gateway_ref} was not captured")
            remaining = intent.amount_cents - intent.refunded_cents
            amount = remaining if amount_cents is None else amount_cents
            if amount <= 0 or amount > remaining:
                raise GatewayError(detail="refund_amount_invalid")
            intent.refunded_cents += amount
            refund_ref = f"re_stub_{uuid.uuid4().hex[:16]}"
            intent.refunds.append(refund_ref)
            return refund_ref


__all__ = ["StubGateway", "StubIntent"]
