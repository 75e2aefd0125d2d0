"""
Professional Licensing Portal
Scheduled Jobs.

Jobs:
    - assignment_escalation: escalates assignments nobody answered in time
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("assignment_escalation", interval_minutes=15)
def run_assignment_escalation(app) -> dict[str, Any]:
    """Escalate active assignments older than their rule's escalation window."""
    orchestrator = app.extensions["workflow"]
    summary = orchestrator.run_escalation_sweep()
    logger.info("Assignment escalation: %d escalated, %d alerts, %d skipped",
                len(summary["escalated"]), len(summary["alerts"]), summary["skipped"])
    return summary
