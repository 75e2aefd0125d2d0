"""
Payment Gateway collaborator.

get_payment_status(application_id) → {"is_complete": bool, "amount_paid": str,
                                      "transaction_id": str | None}

Gateway redirects and webhooks are handled outside the workflow core; the
core only polls or receives the verdict in the action payload.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from app.integrations.http_gateway import HttpGateway

logger = logging.getLogger(__name__)


class PaymentGatewayClient(HttpGateway):
    service_name = "payment_gateway"

    def get_payment_status(self, application_id: int) -> dict:
        data = self.call("GET", f"payments/{application_id}/status")
        return {
            "is_complete": bool(data.get("isComplete", data.get("is_complete", False))),
            "amount_paid": str(data.get("amountPaid", data.get("amount_paid", "0"))),
            "transaction_id": data.get("transactionId") or data.get("transaction_id"),
        }


class LocalPaymentGateway:
    """In-process gateway for development and tests."""

    def __init__(self) -> None:
        self._payments: dict[int, dict] = {}

    def settle(self, application_id: int, amount, *, transaction_id: str | None = None,
               complete: bool = True) -> None:
        self._payments[int(application_id)] = {
            "is_complete": complete,
            "amount_paid": str(Decimal(str(amount))),
            "transaction_id": transaction_id or f"LOCAL-TXN-{application_id}",
        }

    def get_payment_status(self, application_id: int) -> dict:
        return dict(self._payments.get(
            int(application_id),
            {"is_complete": False, "amount_paid": "0", "transaction_id": None},
        ))
