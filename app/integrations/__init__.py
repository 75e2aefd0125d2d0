"""app.integrations: External collaborator gateways.

All outbound HTTP calls to the document store, the HSM signature service
and the payment gateway go through a gateway in this package, never via
bare `requests` calls in services or blueprints.

When a collaborator URL is not configured the in-process Local*
implementation is used (development, tests).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.integrations.document_store import DocumentStoreClient, LocalDocumentStore
from app.integrations.payment_gateway import LocalPaymentGateway, PaymentGatewayClient
from app.integrations.signature_service import HsmSignatureClient, LocalSignatureService


@dataclass
class WorkflowGateways:
    document_store: object = field(default_factory=LocalDocumentStore)
    signature_service: object = field(default_factory=LocalSignatureService)
    payment_gateway: object = field(default_factory=LocalPaymentGateway)


def build_gateways(cfg) -> WorkflowGateways:
    """Pick HTTP or local collaborators from the Flask config mapping."""
    timeout = int(cfg.get("INTEGRATION_TIMEOUT_SECONDS", 30))
    api_key = cfg.get("INTEGRATION_API_KEY")
    gateways = WorkflowGateways()
    if cfg.get("DOCUMENT_STORE_URL"):
        gateways.document_store = DocumentStoreClient(cfg["DOCUMENT_STORE_URL"], api_key=api_key, timeout=timeout)
    if cfg.get("HSM_BASE_URL"):
        gateways.signature_service = HsmSignatureClient(cfg["HSM_BASE_URL"], api_key=api_key, timeout=timeout)
    if cfg.get("PAYMENT_GATEWAY_URL"):
        gateways.payment_gateway = PaymentGatewayClient(cfg["PAYMENT_GATEWAY_URL"], api_key=api_key, timeout=timeout)
    return gateways
