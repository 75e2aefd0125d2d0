"""
HSM Signature Service collaborator.

request_signature(application_id, stage, document_ref) → {status, signature_id}
get_signature_status(signature_id)                       → SignatureStatus value

Only the terminal Completed / Failed / Verified statuses matter to the
workflow; anything else leaves the signing stage open.
"""

from __future__ import annotations

import logging
import threading
import uuid

from app.integrations.http_gateway import HttpGateway, IntegrationError

logger = logging.getLogger(__name__)


class HsmSignatureClient(HttpGateway):
    service_name = "signature_service"

    def request_signature(self, application_id: int, stage: str, document_ref: str) -> dict:
        data = self.call("POST", "signatures", json_body={
            "applicationId": application_id,
            "stage": stage,
            "documentRef": document_ref,
        })
        signature_id = data.get("signatureId") or data.get("signature_id")
        if not signature_id:
            raise IntegrationError(self.service_name, "response carries no signature id")
        return {"signature_id": signature_id, "status": data.get("status", "InProgress")}

    def get_signature_status(self, signature_id: str) -> str:
        data = self.call("GET", f"signatures/{signature_id}")
        status = data.get("status")
        if not status:
            raise IntegrationError(self.service_name, f"no status for signature {signature_id}")
        return status


class LocalSignatureService:
    """
    Simulated HSM for development and tests.

    Requests are accepted as InProgress; with ``auto_complete`` a poll
    reports Completed, otherwise the status set through ``resolve``.
    """

    def __init__(self, *, auto_complete: bool = True) -> None:
        self.auto_complete = auto_complete
        self._lock = threading.Lock()
        self._statuses: dict[str, str] = {}

    def request_signature(self, application_id: int, stage: str, document_ref: str) -> dict:
        signature_id = f"LOCAL-SIG-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._statuses[signature_id] = "InProgress"
        logger.debug("Local signature %s requested for application %s (%s)",
                     signature_id, application_id, stage)
        return {"signature_id": signature_id, "status": "InProgress"}

    def resolve(self, signature_id: str, status: str) -> None:
        with self._lock:
            self._statuses[signature_id] = status

    def get_signature_status(self, signature_id: str) -> str:
        with self._lock:
            status = self._statuses.get(signature_id, "InProgress")
        if status == "InProgress" and self.auto_complete:
            return "Completed"
        return status
