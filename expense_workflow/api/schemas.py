"""
Pydantic schemas for API requests and camelCase response builders
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from ..models import (
    ApprovalHistoryEntry, EscalationPolicy, Predicate, PredicateCondition, RejectionCategory,
    ReportSnapshot, ReturnPolicy, TargetType, WorkflowConditions, WorkflowDefinition, WorkflowStep
)


TargetValue = Union[str, Dict[str, str], None]


class CamelModel(BaseModel):
    """Accepts camelCase (and snake_case) field names"""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "str_strip_whitespace": True,
    }


class PredicateModel(CamelModel):
    field: str = Field(..., min_length=1, max_length=200)
    condition: PredicateCondition
    value: Any = None

    def to_predicate(self) -> Predicate:
        return Predicate(field=self.field, condition=self.condition, value=self.value)


class EscalationModel(CamelModel):
    enabled: bool = True
    target_type: Optional[TargetType] = None
    target_value: TargetValue = None
    notify_at_hours: List[float] = Field(default_factory=list)
    auto_approve_after_hours: Optional[float] = Field(None, gt=0)

    def to_policy(self) -> EscalationPolicy:
        return EscalationPolicy(
            enabled=self.enabled,
            target_type=self.target_type,
            target_value=self.target_value,
            notify_at_hours=list(self.notify_at_hours),
            auto_approve_after_hours=self.auto_approve_after_hours
        )


class StepModel(CamelModel):
    step_number: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=255)
    target_type: TargetType
    target_value: TargetValue = None
    sla_hours: float = Field(..., gt=0)
    required: bool = False
    required_if: Optional[PredicateModel] = None
    skip_if: Optional[PredicateModel] = None
    escalation: Optional[EscalationModel] = None

    def to_step(self) -> WorkflowStep:
        return WorkflowStep(
            step_number=self.step_number,
            name=self.name,
            target_type=self.target_type,
            target_value=self.target_value,
            sla_hours=self.sla_hours,
            required=self.required,
            required_if=self.required_if.to_predicate() if self.required_if else None,
            skip_if=self.skip_if.to_predicate() if self.skip_if else None,
            escalation=self.escalation.to_policy() if self.escalation else None
        )


class ConditionsModel(CamelModel):
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    categories: Optional[List[str]] = None
    departments: Optional[List[str]] = None

    def to_conditions(self) -> WorkflowConditions:
        return WorkflowConditions(
            amount_min=self.amount_min,
            amount_max=self.amount_max,
            categories=self.categories,
            departments=self.departments
        )


class CreateWorkflowRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    conditions: Optional[ConditionsModel] = None
    steps: List[StepModel] = Field(..., min_length=1)
    on_return_policy: ReturnPolicy = ReturnPolicy.HARD_RESTART
    is_active: bool = True


class UpdateWorkflowRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    conditions: Optional[ConditionsModel] = None
    steps: Optional[List[StepModel]] = Field(None, min_length=1)
    on_return_policy: Optional[ReturnPolicy] = None
    is_active: Optional[bool] = None

    def to_changes(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent"""
        changes: Dict[str, Any] = {}
        sent = self.model_fields_set
        if "name" in sent and self.name is not None:
            changes["name"] = self.name
        if "description" in sent:
            changes["description"] = self.description
        if "conditions" in sent:
            changes["conditions"] = self.conditions.to_conditions() if self.conditions else None
        if "steps" in sent and self.steps is not None:
            changes["steps"] = [step.to_step() for step in self.steps]
        if "on_return_policy" in sent and self.on_return_policy is not None:
            changes["on_return_policy"] = self.on_return_policy
        if "is_active" in sent and self.is_active is not None:
            changes["is_active"] = self.is_active
        return changes


class ReportSnapshotRequest(CamelModel):
    submitter_id: str = Field(..., min_length=1)
    submitter_email: Optional[str] = None
    amount: Decimal = Field(Decimal("0"), ge=0)
    category: Optional[str] = None
    department: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def to_snapshot(self, report_id: str) -> ReportSnapshot:
        return ReportSnapshot(
            report_id=report_id,
            submitter_id=self.submitter_id,
            submitter_email=self.submitter_email,
            amount=self.amount,
            category=self.category,
            department=self.department,
            attributes=dict(self.attributes)
        )


class ApproveRequest(CamelModel):
    comment: Optional[str] = Field(None, max_length=1000)


class RejectRequest(CamelModel):
    comment: str = Field(..., max_length=1000)
    rejection_category: Optional[RejectionCategory] = None


class ReturnRequest(CamelModel):
    comment: str = Field(..., max_length=1000)


# Response builders

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def predicate_to_response(predicate: Optional[Predicate]) -> Optional[Dict[str, Any]]:
    if predicate is None:
        return None
    return {"field": predicate.field, "condition": predicate.condition.value, "value": predicate.value}


def step_to_response(step: WorkflowStep) -> Dict[str, Any]:
    escalation = step.escalation
    return {
        "stepNumber": step.step_number,
        "name": step.name,
        "targetType": step.target_type.value,
        "targetValue": step.target_value,
        "slaHours": step.sla_hours,
        "required": step.required,
        "requiredIf": predicate_to_response(step.required_if),
        "skipIf": predicate_to_response(step.skip_if),
        "escalation": {
            "enabled": escalation.enabled,
            "targetType": escalation.target_type.value if escalation.target_type else None,
            "targetValue": escalation.target_value,
            "notifyAtHours": escalation.notify_at_hours,
            "autoApproveAfterHours": escalation.auto_approve_after_hours
        } if escalation else None
    }


def workflow_to_response(definition: WorkflowDefinition) -> Dict[str, Any]:
    conditions = definition.conditions
    return {
        "id": definition.id,
        "name": definition.name,
        "description": definition.description,
        "version": definition.version,
        "isActive": definition.is_active,
        "conditions": {
            "amountMin": str(conditions.amount_min) if conditions.amount_min is not None else None,
            "amountMax": str(conditions.amount_max) if conditions.amount_max is not None else None,
            "categories": conditions.categories,
            "departments": conditions.departments
        } if conditions else None,
        "steps": [step_to_response(step) for step in definition.ordered_steps()],
        "onReturnPolicy": definition.on_return_policy.value,
        "createdBy": definition.created_by,
        "createdAt": _iso(definition.created_at),
        "updatedAt": _iso(definition.updated_at)
    }


def history_to_response(entry: ApprovalHistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "reportId": entry.report_id,
        "sequence": entry.sequence,
        "stepNumber": entry.step_number,
        "stepName": entry.step_name,
        "stepInstance": entry.step_instance,
        "actorId": entry.actor_id,
        "actorEmail": entry.actor_email,
        "action": entry.action.value,
        "comment": entry.comment,
        "rejectionCategory": entry.rejection_category,
        "createdAt": _iso(entry.created_at),
        "slaDeadline": _iso(entry.sla_deadline),
        "wasEscalated": entry.was_escalated,
        "currentHash": entry.current_hash
    }


def status_to_response(status: Dict[str, Any]) -> Dict[str, Any]:
    workflow = status.get("workflow")
    return {
        "reportId": status["report_id"],
        "status": status["status"].value,
        "currentStep": status["current_step"],
        "totalSteps": status["total_steps"],
        "stepInstance": status["step_instance"],
        "stalledReason": status["stalled_reason"],
        "slaDeadline": _iso(status["sla_deadline"]),
        "submittedAt": _iso(status.get("submitted_at")),
        "completedAt": _iso(status.get("completed_at")),
        "workflow": workflow_to_response(workflow) if workflow else None,
        "history": [history_to_response(entry) for entry in status["history"]]
    }


def pending_to_response(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "reportId": item["report_id"],
        "workflowId": item["workflow_id"],
        "workflowName": item["workflow_name"],
        "stepNumber": item["step_number"],
        "stepName": item["step_name"],
        "submitterId": item["submitter_id"],
        "amount": str(item["amount"]),
        "category": item["category"],
        "department": item["department"],
        "stepStartedAt": _iso(item["step_started_at"]),
        "slaDeadline": _iso(item["sla_deadline"])
    }


def paginate(items: List[Any], page: int, limit: int) -> Dict[str, Any]:
    """Slice a list into the {data, pagination} envelope"""
    total = len(items)
    total_pages = math.ceil(total / limit) if total else 0
    start = (page - 1) * limit
    return {
        "data": items[start:start + limit],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1
        }
    }
