"""
Escalation Notification Module

Delivers escalation notices produced by the SLA scheduler. Providers report
success as a boolean; delivery problems are logged, never raised, because the
escalation itself is already recorded in approval history.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .logging_config import get_logger, log_action

logger = get_logger("expense_workflow.notifications")


@dataclass
class EscalationNotice:
    """An overdue step, addressed to the resolved escalation target"""
    report_id: str
    step_number: int
    step_name: str
    step_instance: int
    mark_hours: float
    elapsed_hours: float
    sla_deadline: datetime
    recipients: List[str] = field(default_factory=list)
    target: str = ""
    submitter_id: Optional[str] = None

    @property
    def subject(self) -> str:
        return f"Expense report {self.report_id} waiting on '{self.step_name}'"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "workflow_escalation",
            "reportId": self.report_id,
            "stepNumber": self.step_number,
            "stepName": self.step_name,
            "stepInstance": self.step_instance,
            "markHours": self.mark_hours,
            "elapsedHours": round(self.elapsed_hours, 2),
            "slaDeadline": self.sla_deadline.isoformat(),
            "recipients": self.recipients,
            "target": self.target,
            "submitterId": self.submitter_id,
            "subject": self.subject
        }


class EscalationNotifier(ABC):
    """Abstract base class for escalation delivery channels"""

    @abstractmethod
    def send(self, notice: EscalationNotice) -> bool:
        """Deliver the notice. Returns True if successful."""
        pass

    def close(self) -> None:
        pass


class LogNotifier(EscalationNotifier):
    """Writes escalations to the application log"""

    def send(self, notice: EscalationNotice) -> bool:
        log_action(
            logger, "warning", notice.subject,
            action="escalation_notice",
            resource=f"expense_report:{notice.report_id}",
            extra={"recipients": notice.recipients, "mark_hours": notice.mark_hours,
                   "step_number": notice.step_number}
        )
        return True


class WebhookNotifier(EscalationNotifier):
    """POSTs escalations as JSON to a webhook"""

    def __init__(self, url: str, timeout: float = 5.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def send(self, notice: EscalationNotice) -> bool:
        try:
            response = self._client.post(
                self.url,
                json=notice.to_payload(),
                headers={"Content-Type": "application/json"}
            )
        except httpx.HTTPError as e:
            logger.error(f"Escalation webhook failed for report {notice.report_id}: {e}")
            return False

        if response.status_code >= 300:
            logger.warning(f"Escalation webhook returned {response.status_code} for report {notice.report_id}")
            return False
        return True

    def close(self) -> None:
        self._client.close()


class CompositeNotifier(EscalationNotifier):
    """Fans a notice out to several notifiers; succeeds if any of them does"""

    def __init__(self, notifiers: List[EscalationNotifier]):
        self.notifiers = list(notifiers)

    def send(self, notice: EscalationNotice) -> bool:
        results = [notifier.send(notice) for notifier in self.notifiers]
        return any(results)

    def close(self) -> None:
        for notifier in self.notifiers:
            notifier.close()


class RecordingNotifier(EscalationNotifier):
    """Keeps notices in memory for tests"""

    def __init__(self):
        self.notices: List[EscalationNotice] = []
        self._lock = threading.Lock()

    def send(self, notice: EscalationNotice) -> bool:
        with self._lock:
            self.notices.append(notice)
        return True
