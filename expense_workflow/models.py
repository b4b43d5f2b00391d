"""
Workflow Domain Models

Workflow definitions (templates with ordered steps), the report snapshot the engine
evaluates, per-report workflow state, and immutable approval history entries.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum

from .storage import StorageRecord
from .errors import ValidationError


class TargetType(Enum):
    """How a step's approvers are determined"""
    ROLE = "role"
    RELATIONSHIP = "relationship"
    HYBRID = "hybrid"
    SYSTEM = "system"


class PredicateCondition(Enum):
    """Closed set of predicate operators"""
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"


class ReturnPolicy(Enum):
    """Where a returned report resumes"""
    HARD_RESTART = "hard_restart"
    SOFT_RESTART = "soft_restart"


class ReportStatus(Enum):
    """Workflow status of an expense report"""
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"


TERMINAL_STATUSES = frozenset({ReportStatus.APPROVED, ReportStatus.REJECTED})


class ApprovalAction(Enum):
    """Actions recorded in approval history"""
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"
    ESCALATE = "escalate"
    AUTO_APPROVE = "auto_approve"


# Actions that close a step instance
DECISION_ACTIONS = frozenset({
    ApprovalAction.APPROVE, ApprovalAction.REJECT,
    ApprovalAction.RETURN, ApprovalAction.AUTO_APPROVE
})


class RejectionCategory(Enum):
    """Reasons a reviewer may attach to a rejection"""
    MISSING_RECEIPT = "missing_receipt"
    POLICY_VIOLATION = "policy_violation"
    DUPLICATE_EXPENSE = "duplicate_expense"
    INSUFFICIENT_DETAIL = "insufficient_detail"
    BUDGET_UNAVAILABLE = "budget_unavailable"
    OTHER = "other"


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a numeric value to Decimal; None for anything non-numeric"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
        return result if result.is_finite() else None
    return None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Predicate:
    """A single (field, operator, value) test against report data"""
    field: str
    condition: PredicateCondition
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {'field': self.field, 'condition': self.condition.value, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Predicate':
        return cls(field=data['field'], condition=PredicateCondition(data['condition']),
                   value=data.get('value'))


@dataclass
class EscalationPolicy:
    """Escalation block of a workflow step"""
    enabled: bool = True
    target_type: Optional[TargetType] = None  # Falls back to the step's own target
    target_value: Union[str, Dict[str, str], None] = None
    notify_at_hours: List[float] = field(default_factory=list)
    auto_approve_after_hours: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'target_type': self.target_type.value if self.target_type else None,
            'target_value': self.target_value,
            'notify_at_hours': list(self.notify_at_hours),
            'auto_approve_after_hours': self.auto_approve_after_hours
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationPolicy':
        return cls(
            enabled=data.get('enabled', True),
            target_type=TargetType(data['target_type']) if data.get('target_type') else None,
            target_value=data.get('target_value'),
            notify_at_hours=list(data.get('notify_at_hours') or []),
            auto_approve_after_hours=data.get('auto_approve_after_hours')
        )


@dataclass
class WorkflowStep:
    """Definition of a single workflow step"""
    step_number: int
    name: str
    target_type: TargetType
    target_value: Union[str, Dict[str, str], None]
    sla_hours: float
    required: bool = False
    required_if: Optional[Predicate] = None
    skip_if: Optional[Predicate] = None
    escalation: Optional[EscalationPolicy] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step_number': self.step_number,
            'name': self.name,
            'target_type': self.target_type.value,
            'target_value': self.target_value,
            'sla_hours': self.sla_hours,
            'required': self.required,
            'required_if': self.required_if.to_dict() if self.required_if else None,
            'skip_if': self.skip_if.to_dict() if self.skip_if else None,
            'escalation': self.escalation.to_dict() if self.escalation else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowStep':
        return cls(
            step_number=data['step_number'],
            name=data['name'],
            target_type=TargetType(data['target_type']),
            target_value=data.get('target_value'),
            sla_hours=data['sla_hours'],
            required=data.get('required', False),
            required_if=Predicate.from_dict(data['required_if']) if data.get('required_if') else None,
            skip_if=Predicate.from_dict(data['skip_if']) if data.get('skip_if') else None,
            escalation=EscalationPolicy.from_dict(data['escalation']) if data.get('escalation') else None
        )


@dataclass
class WorkflowConditions:
    """Selection conditions; every populated field must match (AND)"""
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    categories: Optional[List[str]] = None
    departments: Optional[List[str]] = None

    def specificity(self) -> int:
        """Number of populated condition fields"""
        return sum(1 for value in (self.amount_min, self.amount_max, self.categories, self.departments)
                   if value is not None)

    def matches(self, report: 'ReportSnapshot') -> bool:
        if self.amount_min is not None and report.amount < self.amount_min:
            return False
        if self.amount_max is not None and report.amount > self.amount_max:
            return False
        if self.categories is not None and report.category not in self.categories:
            return False
        if self.departments is not None and report.department not in self.departments:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount_min': str(self.amount_min) if self.amount_min is not None else None,
            'amount_max': str(self.amount_max) if self.amount_max is not None else None,
            'categories': self.categories,
            'departments': self.departments
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowConditions':
        return cls(
            amount_min=to_decimal(data.get('amount_min')),
            amount_max=to_decimal(data.get('amount_max')),
            categories=data.get('categories'),
            departments=data.get('departments')
        )


@dataclass
class WorkflowDefinition(StorageRecord):
    """Versioned workflow definition (template)"""
    name: str
    steps: List[WorkflowStep]
    version: int = 1
    is_active: bool = True
    conditions: Optional[WorkflowConditions] = None
    on_return_policy: ReturnPolicy = ReturnPolicy.HARD_RESTART
    description: Optional[str] = None
    created_by: Optional[str] = None

    def ordered_steps(self) -> List[WorkflowStep]:
        return sorted(self.steps, key=lambda s: s.step_number)

    def get_step(self, step_number: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def first_step(self) -> WorkflowStep:
        return self.ordered_steps()[0]

    def steps_from(self, step_number: int) -> List[WorkflowStep]:
        """Steps at or after step_number, in order"""
        return [s for s in self.ordered_steps() if s.step_number >= step_number]

    def next_step_after(self, step_number: int) -> Optional[WorkflowStep]:
        for step in self.ordered_steps():
            if step.step_number > step_number:
                return step
        return None

    def validate(self) -> None:
        """Raise ValidationError if the definition is malformed"""
        if not self.name or not self.name.strip():
            raise ValidationError("Workflow name is required")
        if not self.steps:
            raise ValidationError("Workflow must have at least one step")

        step_numbers = [step.step_number for step in self.steps]
        if len(set(step_numbers)) != len(step_numbers):
            raise ValidationError("Step numbers must be unique", {"step_numbers": step_numbers})

        for step in self.steps:
            if not isinstance(step.step_number, int) or step.step_number < 1:
                raise ValidationError(f"Step number must be a positive integer: {step.step_number}")
            if step.sla_hours is None or step.sla_hours <= 0:
                raise ValidationError(f"Step {step.step_number}: slaHours must be positive")
            _validate_target(step.step_number, step.target_type, step.target_value)

            escalation = step.escalation
            if escalation:
                if any(mark < 0 for mark in escalation.notify_at_hours):
                    raise ValidationError(f"Step {step.step_number}: notifyAtHours must not be negative")
                if escalation.auto_approve_after_hours is not None and escalation.auto_approve_after_hours <= 0:
                    raise ValidationError(f"Step {step.step_number}: autoApproveAfterHours must be positive")
                if escalation.target_type is not None:
                    _validate_target(step.step_number, escalation.target_type, escalation.target_value)

        conditions = self.conditions
        if conditions and conditions.amount_min is not None and conditions.amount_max is not None:
            if conditions.amount_min > conditions.amount_max:
                raise ValidationError("amountMin must not exceed amountMax")

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form; also used as the immutable per-version snapshot"""
        result = super().to_dict()
        result['steps'] = [step.to_dict() for step in self.ordered_steps()]
        result['conditions'] = self.conditions.to_dict() if self.conditions else None
        result['on_return_policy'] = self.on_return_policy.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        data = dict(data)
        data['steps'] = [WorkflowStep.from_dict(step) for step in data.get('steps', [])]
        data['conditions'] = WorkflowConditions.from_dict(data['conditions']) if data.get('conditions') else None
        data['on_return_policy'] = ReturnPolicy(data.get('on_return_policy') or ReturnPolicy.HARD_RESTART.value)
        return super().from_dict(data)


def _validate_target(step_number: int, target_type: TargetType, target_value: Any) -> None:
    if target_type == TargetType.SYSTEM:
        return
    if target_type == TargetType.HYBRID:
        if not isinstance(target_value, dict) or not target_value.get('role') or not target_value.get('relationship'):
            raise ValidationError(f"Step {step_number}: hybrid target needs both role and relationship")
        return
    if not isinstance(target_value, str) or not target_value.strip():
        raise ValidationError(f"Step {step_number}: {target_type.value} target needs a name")


@dataclass
class ReportSnapshot:
    """Report data the engine routes on, pushed by the expense report service"""
    report_id: str
    submitter_id: str
    amount: Decimal = Decimal("0")
    category: Optional[str] = None
    department: Optional[str] = None
    submitter_email: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_context(self) -> Dict[str, Any]:
        """Flattened view used by predicates; custom attributes sit at top level too"""
        context: Dict[str, Any] = dict(self.attributes)
        context.update({
            'report_id': self.report_id,
            'submitter_id': self.submitter_id,
            'amount': self.amount,
            'category': self.category,
            'department': self.department,
            'attributes': dict(self.attributes)
        })
        return context

    def to_dict(self) -> Dict[str, Any]:
        return {
            'report_id': self.report_id,
            'submitter_id': self.submitter_id,
            'submitter_email': self.submitter_email,
            'amount': str(self.amount),
            'category': self.category,
            'department': self.department,
            'attributes': self.attributes
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReportSnapshot':
        return cls(
            report_id=data['report_id'],
            submitter_id=data['submitter_id'],
            submitter_email=data.get('submitter_email'),
            amount=to_decimal(data.get('amount')) or Decimal("0"),
            category=data.get('category'),
            department=data.get('department'),
            attributes=data.get('attributes') or {}
        )


@dataclass
class ApprovalHistoryEntry(StorageRecord):
    """Immutable approval history record, hash-chained per report"""
    report_id: str
    step_number: int
    step_name: str
    action: ApprovalAction
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    comment: Optional[str] = None
    rejection_category: Optional[str] = None
    sla_deadline: Optional[datetime] = None
    was_escalated: bool = False
    step_instance: int = 1
    sequence: int = 0
    idempotency_key: Optional[str] = None
    previous_hash: str = ""
    current_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        result['sla_deadline'] = _format_datetime(self.sla_deadline)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalHistoryEntry':
        data = dict(data)
        data['action'] = ApprovalAction(data['action'])
        data['sla_deadline'] = _parse_datetime(data.get('sla_deadline'))
        return super().from_dict(data)


@dataclass
class ReportWorkflowState:
    """Engine-owned workflow progress for one report"""
    report_id: str
    workflow_id: str
    workflow_version: int
    current_step: int
    status: ReportStatus
    step_instance: int
    step_started_at: datetime
    submitted_at: datetime
    revision: int = 0
    completed_at: Optional[datetime] = None
    stalled_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'report_id': self.report_id,
            'workflow_id': self.workflow_id,
            'workflow_version': self.workflow_version,
            'current_step': self.current_step,
            'status': self.status.value,
            'step_instance': self.step_instance,
            'step_started_at': self.step_started_at.isoformat(),
            'submitted_at': self.submitted_at.isoformat(),
            'revision': self.revision,
            'completed_at': _format_datetime(self.completed_at),
            'stalled_reason': self.stalled_reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReportWorkflowState':
        return cls(
            report_id=data['report_id'],
            workflow_id=data['workflow_id'],
            workflow_version=data['workflow_version'],
            current_step=data['current_step'],
            status=ReportStatus(data['status']),
            step_instance=data['step_instance'],
            step_started_at=datetime.fromisoformat(data['step_started_at']),
            submitted_at=datetime.fromisoformat(data['submitted_at']),
            revision=data.get('revision', 0),
            completed_at=_parse_datetime(data.get('completed_at')),
            stalled_reason=data.get('stalled_reason')
        )
