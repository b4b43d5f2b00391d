"""
Expense report workflow endpoints: snapshot sync, status, and the
submit / approve / reject / return transitions
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from .dependencies import WorkflowSystem, get_engine, get_system, require_permission
from .schemas import (
    ApproveRequest, RejectRequest, ReportSnapshotRequest, ReturnRequest, status_to_response
)
from ..engine import ApprovalEngine
from ..errors import ValidationError
from ..identity import Actor, Permission
from ..models import ReportWorkflowState


router = APIRouter()


def _check_comment(system: WorkflowSystem, comment: Optional[str]) -> str:
    config = system.config
    comment = (comment or "").strip()
    if len(comment) < config.min_comment_length:
        raise ValidationError(
            f"Comment must be at least {config.min_comment_length} characters",
            {"field": "comment"}
        )
    if len(comment) > config.max_comment_length:
        raise ValidationError(
            f"Comment must be at most {config.max_comment_length} characters",
            {"field": "comment"}
        )
    return comment


def _transition_response(state: ReportWorkflowState) -> Dict[str, Any]:
    return {
        "reportId": state.report_id,
        "status": state.status.value,
        "currentStep": state.current_step,
        "workflowId": state.workflow_id,
        "workflowVersion": state.workflow_version,
        "stalledReason": state.stalled_reason
    }


@router.put("/{report_id}")
def sync_report(
    report_id: str,
    request: ReportSnapshotRequest,
    actor: Actor = Depends(require_permission(Permission.REPORT_SYNC)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Store the report data used for routing"""
    snapshot = engine.sync_report(request.to_snapshot(report_id))
    return {
        "reportId": snapshot.report_id,
        "submitterId": snapshot.submitter_id,
        "amount": str(snapshot.amount),
        "category": snapshot.category,
        "department": snapshot.department
    }


@router.get("/{report_id}/workflow-status")
def get_workflow_status(
    report_id: str,
    actor: Actor = Depends(require_permission(Permission.REPORT_VIEW)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Status, bound workflow snapshot and full approval history"""
    return status_to_response(engine.get_status(report_id))


@router.post("/{report_id}/submit")
def submit_report(
    report_id: str,
    actor: Actor = Depends(require_permission(Permission.REPORT_SUBMIT)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Bind the report to a workflow and start review"""
    return _transition_response(engine.submit(report_id, actor))


@router.post("/{report_id}/approve")
def approve_report(
    report_id: str,
    request: Optional[ApproveRequest] = None,
    actor: Actor = Depends(require_permission(Permission.REPORT_APPROVE)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Approve the current step"""
    comment = request.comment if request else None
    return _transition_response(engine.approve(report_id, actor, comment or None))


@router.post("/{report_id}/reject")
def reject_report(
    report_id: str,
    request: RejectRequest,
    actor: Actor = Depends(require_permission(Permission.REPORT_REJECT)),
    system: WorkflowSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Reject the report"""
    comment = _check_comment(system, request.comment)
    category = request.rejection_category.value if request.rejection_category else None
    return _transition_response(system.engine.reject(report_id, actor, comment, category))


@router.post("/{report_id}/return")
def return_report(
    report_id: str,
    request: ReturnRequest,
    actor: Actor = Depends(require_permission(Permission.REPORT_RETURN)),
    system: WorkflowSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Return the report to an earlier step"""
    comment = _check_comment(system, request.comment)
    return _transition_response(system.engine.return_report(report_id, actor, comment))
