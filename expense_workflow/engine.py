"""
Approval Engine

Owns per-report workflow progress: binding a report to a workflow version at
submission, walking its steps (skipping inactive and system steps), and the
approve / reject / return / escalate / auto_approve transitions. Also manages
workflow definitions and their immutable version snapshots.

Every mutation of a report runs under that report's lock and inside a
repository transaction. State saves are compare-and-swap on the state's
revision, and step decisions are claimed through history idempotency keys,
so concurrent writers in other processes lose cleanly with ConflictError.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .audit import ApprovalAuditTrail, idempotency_key
from .clock import Clock, SystemClock
from .directory import DirectoryInterface
from .errors import (
    ConflictError, ForbiddenError, NotFoundError, UnresolvableTargetError, ValidationError
)
from .identity import Actor, Permission
from .locks import ReportLockManager
from .logging_config import get_logger, log_action
from .models import (
    ApprovalAction, ApprovalHistoryEntry, EscalationPolicy, ReportSnapshot, ReportStatus,
    ReportWorkflowState, ReturnPolicy, WorkflowConditions, WorkflowDefinition, WorkflowStep
)
from .notifications import EscalationNotice, EscalationNotifier, LogNotifier
from .predicates import is_step_active
from .repository import WorkflowRepository
from .selector import WorkflowSelector
from .targets import ActorSet, ResolutionContext, SystemTarget, build_target

logger = get_logger("expense_workflow.engine")

# Definition fields editable through update_workflow
MUTABLE_WORKFLOW_FIELDS = ("name", "description", "conditions", "steps", "on_return_policy", "is_active")

SKIPPED_COMMENT = "Step skipped by routing rules"
SYSTEM_COMMENT = "Automatic system approval"
AUTO_APPROVE_COMMENT = "Auto-approved after SLA timeout"


def sla_deadline(state: ReportWorkflowState, step: WorkflowStep) -> datetime:
    """Deadline of the current step instance"""
    return state.step_started_at + timedelta(hours=step.sla_hours)


def hours_since(start: datetime, now: datetime) -> float:
    return (now - start).total_seconds() / 3600


class ApprovalEngine:
    """Workflow approval state machine"""

    def __init__(
        self,
        repository: WorkflowRepository,
        directory: DirectoryInterface,
        clock: Optional[Clock] = None,
        notifier: Optional[EscalationNotifier] = None,
        default_workflow_id: Optional[str] = None,
        return_requires_resubmit: bool = False,
        locks: Optional[ReportLockManager] = None
    ):
        self.repository = repository
        self.directory = directory
        self.clock = clock or SystemClock()
        self.notifier = notifier or LogNotifier()
        self.return_requires_resubmit = return_requires_resubmit
        self.locks = locks or ReportLockManager()
        self.audit = ApprovalAuditTrail(repository, self.clock)
        self.selector = WorkflowSelector(repository, default_workflow_id)

    # Definition Management

    def create_workflow(
        self,
        name: str,
        steps: List[WorkflowStep],
        conditions: Optional[WorkflowConditions] = None,
        on_return_policy: ReturnPolicy = ReturnPolicy.HARD_RESTART,
        description: Optional[str] = None,
        is_active: bool = True,
        created_by: Optional[str] = None
    ) -> WorkflowDefinition:
        """Create a workflow definition at version 1"""
        now = self.clock.now()
        definition = WorkflowDefinition(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            steps=list(steps),
            version=1,
            is_active=is_active,
            conditions=conditions,
            on_return_policy=on_return_policy,
            description=description,
            created_by=created_by
        )
        definition.validate()

        if not self.repository.save_workflow(definition, None):
            raise ConflictError(f"Workflow {definition.id} already exists")

        log_action(logger, "info", f"Workflow '{name}' created",
                   user_id=created_by, action="workflow_created",
                   resource=f"workflow:{definition.id}",
                   extra={"steps": len(definition.steps)})
        return definition

    def update_workflow(self, workflow_id: str, changes: Dict[str, Any],
                        updated_by: Optional[str] = None) -> WorkflowDefinition:
        """
        Apply changes to a definition and bump its version.

        Reports already bound to an earlier version keep using that version's
        snapshot.
        """
        unknown = set(changes) - set(MUTABLE_WORKFLOW_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        current = self.get_workflow(workflow_id)
        updated = WorkflowDefinition.from_dict(current.to_dict())
        for field_name, value in changes.items():
            setattr(updated, field_name, value)
        updated.version = current.version + 1
        updated.updated_at = self.clock.now()
        updated.validate()

        if not self.repository.save_workflow(updated, current.version):
            raise ConflictError(f"Workflow {workflow_id} was modified concurrently")

        log_action(logger, "info", f"Workflow '{updated.name}' updated to v{updated.version}",
                   user_id=updated_by, action="workflow_updated",
                   resource=f"workflow:{workflow_id}",
                   extra={"fields": sorted(changes)})
        return updated

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        definition = self.repository.get_workflow(workflow_id)
        if definition is None:
            raise NotFoundError("Workflow", workflow_id)
        return definition

    def list_workflows(self, active_only: bool = False) -> List[WorkflowDefinition]:
        return self.repository.list_workflows(active_only=active_only)

    # Report Data

    def sync_report(self, report: ReportSnapshot) -> ReportSnapshot:
        """Store the latest report data pushed by the expense report service"""
        if not report.submitter_id:
            raise ValidationError("submitterId is required")

        with self.locks.hold(report.report_id):
            existing = self.repository.load_report_snapshot(report.report_id)
            if existing is not None and existing.submitter_id != report.submitter_id:
                raise ConflictError(f"Report {report.report_id} belongs to another submitter")
            self.repository.save_report_snapshot(report)
        return report

    def _load_snapshot(self, report_id: str) -> ReportSnapshot:
        snapshot = self.repository.load_report_snapshot(report_id)
        if snapshot is None:
            raise NotFoundError("Expense report", report_id)
        return snapshot

    def _load_state(self, report_id: str) -> ReportWorkflowState:
        state = self.repository.load_report_state(report_id)
        if state is None:
            raise NotFoundError("Workflow state for report", report_id)
        return state

    def _bound_definition(self, state: ReportWorkflowState) -> WorkflowDefinition:
        definition = self.repository.load_workflow_version(state.workflow_id, state.workflow_version)
        if definition is None:
            raise NotFoundError("Workflow version", f"{state.workflow_id} v{state.workflow_version}")
        return definition

    # Target Resolution

    def resolve_step_target(self, step: WorkflowStep, snapshot: ReportSnapshot) -> ActorSet:
        target = build_target(step.target_type, step.target_value)
        return target.resolve(ResolutionContext(snapshot.submitter_id, self.directory))

    def _authorize_decision(self, actor: Actor, step: WorkflowStep, snapshot: ReportSnapshot) -> None:
        """Raise unless the actor may decide on the current step"""
        if actor.id == snapshot.submitter_id:
            logger.warning(f"Self-approval attempt blocked: actor {actor.id} on report {snapshot.report_id}")
            raise ForbiddenError("Cannot approve your own expense report", {"check": "direct_self"})

        override = actor.has_permission(Permission.WORKFLOW_OVERRIDE)
        try:
            eligible = self.resolve_step_target(step, snapshot)
        except UnresolvableTargetError:
            if override:
                return
            raise

        if actor.id not in eligible and not override:
            raise ForbiddenError(
                f"Actor {actor.id} is not an approver for step {step.step_number}",
                {"step_number": step.step_number}
            )

    # Step Walking

    def _enter_steps(self, state: ReportWorkflowState, definition: WorkflowDefinition,
                     snapshot: ReportSnapshot, start_step: int,
                     now: datetime) -> List[Tuple[WorkflowStep, int, str]]:
        """
        Move state to the first active step at or after start_step.

        Every step entered gets a new step instance. Bypassed steps (inactive
        by predicate, or system steps) are returned for recording as
        actorless approvals. If every remaining step is bypassed the report
        is approved.
        """
        bypassed: List[Tuple[WorkflowStep, int, str]] = []
        context = snapshot.to_context()

        for step in definition.steps_from(start_step):
            state.step_instance += 1

            if not is_step_active(step, context):
                bypassed.append((step, state.step_instance, SKIPPED_COMMENT))
                continue

            target = build_target(step.target_type, step.target_value)
            if isinstance(target, SystemTarget):
                bypassed.append((step, state.step_instance, SYSTEM_COMMENT))
                continue

            state.stalled_reason = None
            try:
                target.resolve(ResolutionContext(snapshot.submitter_id, self.directory))
            except UnresolvableTargetError as e:
                state.stalled_reason = e.message
                log_action(logger, "warning", f"Step {step.step_number} stalled: {e.message}",
                           action="step_stalled", resource=f"expense_report:{state.report_id}",
                           extra={"step_number": step.step_number})

            state.current_step = step.step_number
            state.status = ReportStatus.IN_REVIEW
            state.step_started_at = now
            state.completed_at = None
            return bypassed

        # Nothing left to review
        last_step = definition.ordered_steps()[-1]
        state.current_step = last_step.step_number
        state.status = ReportStatus.APPROVED
        state.stalled_reason = None
        state.completed_at = now
        return bypassed

    def _commit(
        self,
        state: ReportWorkflowState,
        expected_revision: Optional[int],
        bypassed: List[Tuple[WorkflowStep, int, str]],
        decision: Optional[Dict[str, Any]] = None
    ) -> Optional[ApprovalHistoryEntry]:
        """Save state (compare-and-swap) and append history in one transaction"""
        state.revision = (expected_revision or 0) + 1
        recorded = None

        with self.repository.atomic():
            if not self.repository.save_report_state(state, expected_revision):
                raise ConflictError(f"Report {state.report_id} was modified concurrently")

            if decision is not None:
                recorded = self.audit.record(report_id=state.report_id, **decision)
                if recorded is None:
                    raise ConflictError(
                        f"Step {decision['step_number']} of report {state.report_id} was already decided"
                    )

            for step, step_instance, comment in bypassed:
                self.audit.record(
                    report_id=state.report_id,
                    step_number=step.step_number,
                    step_name=step.name,
                    step_instance=step_instance,
                    action=ApprovalAction.APPROVE,
                    comment=comment
                )

        return recorded

    def _decision(self, state: ReportWorkflowState, step: WorkflowStep, action: ApprovalAction,
                  actor: Optional[Actor] = None, comment: Optional[str] = None,
                  rejection_category: Optional[str] = None) -> Dict[str, Any]:
        return {
            "step_number": step.step_number,
            "step_name": step.name,
            "step_instance": state.step_instance,
            "action": action,
            "actor_id": actor.id if actor else None,
            "actor_email": actor.email if actor else None,
            "comment": comment,
            "rejection_category": rejection_category,
            "sla_deadline": sla_deadline(state, step),
            "key": idempotency_key(state.report_id, step.step_number, state.step_instance, action)
        }

    def _require_in_review(self, state: ReportWorkflowState, operation: str) -> None:
        if state.status != ReportStatus.IN_REVIEW:
            raise ConflictError(
                f"Cannot {operation} report in {state.status.value} status",
                {"status": state.status.value}
            )

    # Transitions

    def submit(self, report_id: str, actor: Actor) -> ReportWorkflowState:
        """
        Bind a report to a workflow and start review.

        A returned report (when resubmission is required) resumes at its
        return target under the version it was bound to.
        """
        with self.locks.hold(report_id):
            snapshot = self._load_snapshot(report_id)
            if actor.id != snapshot.submitter_id:
                raise ForbiddenError("Can only submit your own reports")

            existing = self.repository.load_report_state(report_id)
            now = self.clock.now()

            if existing is not None and existing.status not in (ReportStatus.PENDING, ReportStatus.RETURNED):
                raise ConflictError(
                    f"Report {report_id} is already {existing.status.value}",
                    {"status": existing.status.value}
                )

            if existing is not None and existing.status == ReportStatus.RETURNED:
                state = existing
                definition = self._bound_definition(state)
                start_step = state.current_step
                expected_revision: Optional[int] = existing.revision
                state.submitted_at = now
            else:
                definition = self.selector.select(snapshot)
                start_step = definition.first_step().step_number
                expected_revision = existing.revision if existing is not None else None
                state = ReportWorkflowState(
                    report_id=report_id,
                    workflow_id=definition.id,
                    workflow_version=definition.version,
                    current_step=start_step,
                    status=ReportStatus.PENDING,
                    step_instance=0,
                    step_started_at=now,
                    submitted_at=now
                )

            bypassed = self._enter_steps(state, definition, snapshot, start_step, now)
            self._commit(state, expected_revision, bypassed)

        log_action(logger, "info", f"Report {report_id} submitted",
                   user_id=actor.id, action="report_submitted",
                   resource=f"expense_report:{report_id}",
                   extra={"workflow_id": state.workflow_id, "workflow_version": state.workflow_version,
                          "status": state.status.value, "current_step": state.current_step})
        return state

    def approve(self, report_id: str, actor: Actor, comment: Optional[str] = None) -> ReportWorkflowState:
        """Approve the current step and advance to the next active step"""
        with self.locks.hold(report_id):
            state = self._load_state(report_id)
            self._require_in_review(state, "approve")
            definition = self._bound_definition(state)
            step = definition.get_step(state.current_step)
            snapshot = self._load_snapshot(report_id)
            self._authorize_decision(actor, step, snapshot)

            expected_revision = state.revision
            decision = self._decision(state, step, ApprovalAction.APPROVE, actor, comment)
            bypassed = self._advance(state, definition, snapshot, step)
            self._commit(state, expected_revision, bypassed, decision)

        log_action(logger, "info", f"Report {report_id} approved at step {step.step_number}",
                   user_id=actor.id, action="report_approved",
                   resource=f"expense_report:{report_id}",
                   extra={"status": state.status.value, "current_step": state.current_step})
        return state

    def _advance(self, state: ReportWorkflowState, definition: WorkflowDefinition,
                 snapshot: ReportSnapshot, step: WorkflowStep) -> List[Tuple[WorkflowStep, int, str]]:
        now = self.clock.now()
        next_step = definition.next_step_after(step.step_number)
        if next_step is None:
            state.status = ReportStatus.APPROVED
            state.stalled_reason = None
            state.completed_at = now
            return []
        return self._enter_steps(state, definition, snapshot, next_step.step_number, now)

    def reject(self, report_id: str, actor: Actor, comment: str,
               rejection_category: Optional[str] = None) -> ReportWorkflowState:
        """Reject the report; terminal"""
        if not comment or not comment.strip():
            raise ValidationError("A comment is required to reject a report")

        with self.locks.hold(report_id):
            state = self._load_state(report_id)
            self._require_in_review(state, "reject")
            definition = self._bound_definition(state)
            step = definition.get_step(state.current_step)
            snapshot = self._load_snapshot(report_id)
            self._authorize_decision(actor, step, snapshot)

            expected_revision = state.revision
            decision = self._decision(state, step, ApprovalAction.REJECT, actor, comment, rejection_category)
            state.status = ReportStatus.REJECTED
            state.stalled_reason = None
            state.completed_at = self.clock.now()
            self._commit(state, expected_revision, [], decision)

        log_action(logger, "info", f"Report {report_id} rejected at step {step.step_number}",
                   user_id=actor.id, action="report_rejected",
                   resource=f"expense_report:{report_id}",
                   extra={"rejection_category": rejection_category})
        return state

    def return_report(self, report_id: str, actor: Actor, comment: str) -> ReportWorkflowState:
        """
        Send the report back for rework.

        hard_restart targets the first step of the bound version,
        soft_restart the step that issued the return. The report re-enters
        review there immediately as a new step instance, unless resubmission
        is required, in which case it stays returned until the submitter
        submits again.
        """
        if not comment or not comment.strip():
            raise ValidationError("A comment is required to return a report")

        with self.locks.hold(report_id):
            state = self._load_state(report_id)
            self._require_in_review(state, "return")
            definition = self._bound_definition(state)
            step = definition.get_step(state.current_step)
            snapshot = self._load_snapshot(report_id)
            self._authorize_decision(actor, step, snapshot)

            if definition.on_return_policy == ReturnPolicy.HARD_RESTART:
                target_step = definition.first_step().step_number
            else:
                target_step = step.step_number

            expected_revision = state.revision
            decision = self._decision(state, step, ApprovalAction.RETURN, actor, comment)

            if self.return_requires_resubmit:
                state.status = ReportStatus.RETURNED
                state.current_step = target_step
                state.stalled_reason = None
                bypassed = []
            else:
                bypassed = self._enter_steps(state, definition, snapshot, target_step, self.clock.now())
            self._commit(state, expected_revision, bypassed, decision)

        log_action(logger, "info", f"Report {report_id} returned to step {target_step}",
                   user_id=actor.id, action="report_returned",
                   resource=f"expense_report:{report_id}",
                   extra={"policy": definition.on_return_policy.value, "status": state.status.value})
        return state

    def _escalation_target(self, step: WorkflowStep, policy: EscalationPolicy):
        if policy.target_type is not None:
            return build_target(policy.target_type, policy.target_value)
        return build_target(step.target_type, step.target_value)

    def escalate(self, report_id: str, step_instance: int, mark_hours: float) -> Optional[ApprovalHistoryEntry]:
        """
        Record an escalation for one notifyAtHours mark and notify its target.

        Returns None when the step instance has moved on, the mark has not
        elapsed yet, or the mark was already escalated. Directory failures
        propagate so the scheduler retries on its next tick.
        """
        with self.locks.hold(report_id):
            state = self.repository.load_report_state(report_id)
            if state is None or state.status != ReportStatus.IN_REVIEW or state.step_instance != step_instance:
                return None

            definition = self._bound_definition(state)
            step = definition.get_step(state.current_step)
            policy = step.escalation
            if policy is None or not policy.enabled or mark_hours not in policy.notify_at_hours:
                return None

            now = self.clock.now()
            elapsed = hours_since(state.step_started_at, now)
            if elapsed < mark_hours:
                return None

            key = idempotency_key(report_id, step.step_number, step_instance, ApprovalAction.ESCALATE, mark_hours)
            if self.audit.has_entry(report_id, key):
                return None

            snapshot = self._load_snapshot(report_id)
            target = self._escalation_target(step, policy)
            try:
                recipients = target.resolve(ResolutionContext(snapshot.submitter_id, self.directory)).sorted_ids()
            except UnresolvableTargetError as e:
                logger.warning(f"Escalation target for report {report_id} unresolvable: {e.message}")
                recipients = []

            deadline = sla_deadline(state, step)
            with self.repository.atomic():
                entry = self.audit.record(
                    report_id=report_id,
                    step_number=step.step_number,
                    step_name=step.name,
                    step_instance=step_instance,
                    action=ApprovalAction.ESCALATE,
                    comment=f"Escalated after {mark_hours:g}h without a decision",
                    sla_deadline=deadline,
                    was_escalated=True,
                    key=key
                )
            if entry is None:
                return None

            notice = EscalationNotice(
                report_id=report_id,
                step_number=step.step_number,
                step_name=step.name,
                step_instance=step_instance,
                mark_hours=mark_hours,
                elapsed_hours=elapsed,
                sla_deadline=deadline,
                recipients=recipients,
                target=target.describe(),
                submitter_id=snapshot.submitter_id
            )

        # Sent after releasing the report lock
        if not self.notifier.send(notice):
            logger.error(f"Escalation notice for report {report_id} mark {mark_hours:g}h was not delivered")

        log_action(logger, "info", f"Report {report_id} escalated at {mark_hours:g}h",
                   action="report_escalated", resource=f"expense_report:{report_id}",
                   extra={"step_number": step.step_number, "recipients": recipients})
        return entry

    def auto_approve(self, report_id: str, step_instance: int) -> Optional[ReportWorkflowState]:
        """
        Approve the current step instance without an actor once its
        autoApproveAfterHours has elapsed. At most once per step instance;
        returns None when there is nothing to do.
        """
        with self.locks.hold(report_id):
            state = self.repository.load_report_state(report_id)
            if state is None or state.status != ReportStatus.IN_REVIEW or state.step_instance != step_instance:
                return None

            definition = self._bound_definition(state)
            step = definition.get_step(state.current_step)
            policy = step.escalation
            if policy is None or not policy.enabled or policy.auto_approve_after_hours is None:
                return None
            if hours_since(state.step_started_at, self.clock.now()) < policy.auto_approve_after_hours:
                return None

            key = idempotency_key(report_id, step.step_number, step_instance, ApprovalAction.AUTO_APPROVE)
            if self.audit.has_entry(report_id, key):
                return None

            snapshot = self._load_snapshot(report_id)
            expected_revision = state.revision
            decision = self._decision(state, step, ApprovalAction.AUTO_APPROVE, comment=AUTO_APPROVE_COMMENT)
            bypassed = self._advance(state, definition, snapshot, step)
            self._commit(state, expected_revision, bypassed, decision)

        log_action(logger, "info", f"Report {report_id} auto-approved at step {step.step_number}",
                   action="report_auto_approved", resource=f"expense_report:{report_id}",
                   extra={"status": state.status.value, "current_step": state.current_step})
        return state

    # Queries

    def get_status(self, report_id: str) -> Dict[str, Any]:
        """Status, bound workflow snapshot and full history of a report"""
        state = self.repository.load_report_state(report_id)
        if state is None:
            snapshot = self._load_snapshot(report_id)
            return {
                'report_id': snapshot.report_id,
                'status': ReportStatus.PENDING,
                'current_step': None,
                'total_steps': 0,
                'step_instance': 0,
                'stalled_reason': None,
                'sla_deadline': None,
                'workflow': None,
                'history': []
            }

        definition = self._bound_definition(state)
        step = definition.get_step(state.current_step)
        return {
            'report_id': report_id,
            'status': state.status,
            'current_step': state.current_step,
            'total_steps': len(definition.steps),
            'step_instance': state.step_instance,
            'stalled_reason': state.stalled_reason,
            'sla_deadline': sla_deadline(state, step) if state.status == ReportStatus.IN_REVIEW else None,
            'submitted_at': state.submitted_at,
            'completed_at': state.completed_at,
            'workflow': definition,
            'history': self.audit.history(report_id)
        }

    def list_pending_for(self, actor: Actor) -> List[Dict[str, Any]]:
        """In-review reports whose current step the actor may decide"""
        pending = []
        for state in self.repository.list_report_states(ReportStatus.IN_REVIEW):
            snapshot = self.repository.load_report_snapshot(state.report_id)
            if snapshot is None or snapshot.submitter_id == actor.id:
                continue

            definition = self._bound_definition(state)
            step = definition.get_step(state.current_step)
            try:
                eligible = self.resolve_step_target(step, snapshot)
            except UnresolvableTargetError:
                continue
            if actor.id not in eligible:
                continue

            pending.append({
                'report_id': state.report_id,
                'workflow_id': state.workflow_id,
                'workflow_name': definition.name,
                'step_number': step.step_number,
                'step_name': step.name,
                'submitter_id': snapshot.submitter_id,
                'amount': snapshot.amount,
                'category': snapshot.category,
                'department': snapshot.department,
                'step_started_at': state.step_started_at,
                'sla_deadline': sla_deadline(state, step)
            })

        return sorted(pending, key=lambda item: item['step_started_at'])
