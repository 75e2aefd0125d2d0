"""
Document Store collaborator.

The workflow never reads file bytes; it only asks for the store's
verification verdict of a document id.
"""

from __future__ import annotations

import logging

from app.integrations.http_gateway import HttpGateway, IntegrationError

logger = logging.getLogger(__name__)


class DocumentStoreClient(HttpGateway):
    """GET {base}/documents/<id>/verification → {"status": "Approved"}"""

    service_name = "document_store"

    def get_verification_status(self, document_id: str) -> str | None:
        data = self.call("GET", f"documents/{document_id}/verification")
        status = data.get("status")
        if status is None:
            raise IntegrationError(self.service_name, f"no status for document {document_id}")
        return status


class LocalDocumentStore:
    """In-process store for development and tests; unknown documents have no verdict."""

    def __init__(self, verdicts: dict | None = None) -> None:
        self.verdicts = dict(verdicts or {})

    def set_verdict(self, document_id: str, status: str) -> None:
        self.verdicts[str(document_id)] = status

    def get_verification_status(self, document_id: str) -> str | None:
        return self.verdicts.get(str(document_id))
