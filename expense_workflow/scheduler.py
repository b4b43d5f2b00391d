"""
SLA & Escalation Scheduler

Periodically scans in-review reports, fires escalations at each configured
notifyAtHours mark and auto-approves step instances whose
autoApproveAfterHours has elapsed. The engine re-checks every condition
under the report lock and claims each firing through a history idempotency
key, so overlapping ticks (threads or service instances) never double-fire.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .engine import ApprovalEngine, hours_since
from .logging_config import get_logger, log_action
from .models import ReportStatus, ReportWorkflowState

logger = get_logger("expense_workflow.scheduler")


@dataclass
class TickSummary:
    """Outcome of one scheduler pass"""
    scanned: int = 0
    escalations: int = 0
    auto_approvals: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "escalations": self.escalations,
            "auto_approvals": self.auto_approvals,
            "failures": list(self.failures)
        }


class SLAScheduler:
    """Runs tick() on a fixed interval in a background thread"""

    def __init__(self, engine: ApprovalEngine, tick_seconds: float = 300):
        self.engine = engine
        self.tick_seconds = tick_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> TickSummary:
        """Scan every in-review report once"""
        summary = TickSummary()
        states = self.engine.repository.list_report_states(ReportStatus.IN_REVIEW)

        for state in states:
            summary.scanned += 1
            try:
                self._process(state, summary)
            except Exception as e:
                # Left for the next tick; other reports keep going
                logger.exception(f"SLA processing failed for report {state.report_id}")
                summary.failures.append({
                    "report_id": state.report_id,
                    "step_number": state.current_step,
                    "error": getattr(e, "code", type(e).__name__),
                    "message": str(e)
                })

        if summary.escalations or summary.auto_approvals or summary.failures:
            log_action(logger, "info", "SLA tick completed", action="sla_tick",
                       extra=summary.to_dict())
        return summary

    def _process(self, state: ReportWorkflowState, summary: TickSummary) -> None:
        definition = self.engine.repository.load_workflow_version(state.workflow_id, state.workflow_version)
        if definition is None:
            raise LookupError(f"Workflow {state.workflow_id} v{state.workflow_version} is missing")

        step = definition.get_step(state.current_step)
        policy = step.escalation if step else None
        if policy is None or not policy.enabled:
            return

        elapsed = hours_since(state.step_started_at, self.engine.clock.now())

        for mark in sorted(policy.notify_at_hours):
            if elapsed >= mark and self.engine.escalate(state.report_id, state.step_instance, mark):
                summary.escalations += 1

        auto_after = policy.auto_approve_after_hours
        if auto_after is not None and elapsed >= auto_after:
            if self.engine.auto_approve(state.report_id, state.step_instance):
                summary.auto_approvals += 1

    # Background execution

    def _run(self) -> None:
        logger.info(f"SLA scheduler started (every {self.tick_seconds}s)")
        while not self._stop_event.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("SLA tick failed")
        logger.info("SLA scheduler stopped")

    def start(self) -> None:
        """Start the background thread"""
        if self.is_running():
            return
        self._stop_event.clear()
        thread = threading.Thread(target=self._run, name="sla-scheduler")
        thread.daemon = True
        thread.start()
        self._thread = thread

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the thread to stop and wait for it"""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
