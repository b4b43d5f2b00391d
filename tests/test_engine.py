"""
Test suite for the approval engine

Tests workflow definition management, version pinning, submission and step
routing, approve / reject / return transitions, stalled steps, status and
pending-approval queries.
"""

import pytest
from decimal import Decimal

from expense_workflow.clock import ManualClock
from expense_workflow.directory import InMemoryDirectory
from expense_workflow.engine import ApprovalEngine
from expense_workflow.errors import (
    ConflictError, ForbiddenError, NoApplicableWorkflowError, NotFoundError,
    UnresolvableTargetError, ValidationError
)
from expense_workflow.identity import Actor, Permission
from expense_workflow.models import (
    ApprovalAction, Predicate, PredicateCondition, ReportSnapshot, ReportStatus,
    ReturnPolicy, TargetType, WorkflowConditions, WorkflowStep
)
from expense_workflow.notifications import RecordingNotifier
from expense_workflow.repository import StorageWorkflowRepository
from expense_workflow.storage import InMemoryStorage


REVIEWER_PERMISSIONS = [Permission.REPORT_APPROVE, Permission.REPORT_REJECT, Permission.REPORT_RETURN]


def actor(actor_id, *extra_permissions):
    return Actor.with_permissions(actor_id, REVIEWER_PERMISSIONS + list(extra_permissions),
                                  email=f"{actor_id}@example.com")


def step(number, name, target_type, target_value, sla_hours=24, **kwargs):
    return WorkflowStep(step_number=number, name=name, target_type=target_type,
                        target_value=target_value, sla_hours=sla_hours, **kwargs)


def standard_steps():
    """Manager, then finance above 1000, then a director unless it is training"""
    return [
        step(1, "Manager Review", TargetType.RELATIONSHIP, "manager"),
        step(2, "Finance Review", TargetType.ROLE, "finance", sla_hours=48,
             required_if=Predicate("amount", PredicateCondition.GREATER_THAN, 1000)),
        step(3, "Director Sign-off", TargetType.HYBRID, {"role": "director", "relationship": "manager"},
             skip_if=Predicate("category", PredicateCondition.EQUALS, "training")),
    ]


@pytest.fixture
def directory():
    d = InMemoryDirectory()
    d.set_relationship("emp-1", "manager", "mgr-1")
    d.set_relationship("mgr-1", "manager", "dir-1")
    d.add_member("finance", "fin-1")
    d.add_member("director", "dir-1")
    return d


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def repository():
    return StorageWorkflowRepository(InMemoryStorage())


@pytest.fixture
def engine(repository, directory, clock):
    return ApprovalEngine(repository, directory, clock=clock, notifier=RecordingNotifier())


@pytest.fixture
def standard_workflow(engine):
    return engine.create_workflow("Standard", standard_steps(), created_by="admin")


def sync(engine, report_id, submitter="emp-1", amount="1500.00", category="travel", department="engineering"):
    return engine.sync_report(ReportSnapshot(
        report_id=report_id, submitter_id=submitter, amount=Decimal(amount),
        category=category, department=department
    ))


def submitted(engine, report_id, **kwargs):
    snapshot = sync(engine, report_id, **kwargs)
    return engine.submit(report_id, actor(snapshot.submitter_id, Permission.REPORT_SUBMIT))


class TestWorkflowDefinitions:
    """Test definition validation and versioning"""

    def test_create_workflow(self, engine):
        definition = engine.create_workflow("Standard", standard_steps(), created_by="admin")
        assert definition.version == 1
        assert definition.is_active
        assert engine.get_workflow(definition.id).name == "Standard"

    def test_duplicate_step_numbers_rejected(self, engine):
        steps = [step(1, "A", TargetType.ROLE, "finance"), step(1, "B", TargetType.ROLE, "finance")]
        with pytest.raises(ValidationError):
            engine.create_workflow("Broken", steps)

    def test_empty_steps_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.create_workflow("Empty", [])

    def test_non_positive_sla_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.create_workflow("Broken", [step(1, "A", TargetType.ROLE, "finance", sla_hours=0)])

    def test_hybrid_target_needs_both_parts(self, engine):
        with pytest.raises(ValidationError):
            engine.create_workflow("Broken", [step(1, "A", TargetType.HYBRID, {"role": "director"})])

    def test_inverted_amount_range_rejected(self, engine):
        conditions = WorkflowConditions(amount_min=Decimal("500"), amount_max=Decimal("100"))
        with pytest.raises(ValidationError):
            engine.create_workflow("Broken", standard_steps(), conditions=conditions)

    def test_update_bumps_version_and_keeps_snapshot(self, engine, repository, standard_workflow):
        updated = engine.update_workflow(
            standard_workflow.id,
            {"steps": [step(1, "Manager Review", TargetType.RELATIONSHIP, "manager")]}
        )
        assert updated.version == 2
        assert len(engine.get_workflow(standard_workflow.id).steps) == 1
        assert len(repository.load_workflow_version(standard_workflow.id, 1).steps) == 3
        assert len(repository.load_workflow_version(standard_workflow.id, 2).steps) == 1

    def test_update_rejects_unknown_fields(self, engine, standard_workflow):
        with pytest.raises(ValidationError):
            engine.update_workflow(standard_workflow.id, {"version": 7})

    def test_get_missing_workflow(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_workflow("missing")

    def test_list_active_only(self, engine, standard_workflow):
        engine.create_workflow("Retired", standard_steps(), is_active=False)
        assert len(engine.list_workflows()) == 2
        assert [d.name for d in engine.list_workflows(active_only=True)] == ["Standard"]


class TestSubmit:
    """Test workflow binding and step routing at submission"""

    def test_submit_enters_first_step(self, engine, standard_workflow):
        state = submitted(engine, "RPT-1")
        assert state.status == ReportStatus.IN_REVIEW
        assert state.current_step == 1
        assert state.step_instance == 1
        assert state.workflow_id == standard_workflow.id
        assert state.workflow_version == 1
        assert state.stalled_reason is None

    def test_selector_prefers_conditioned_workflow(self, engine):
        default = engine.create_workflow("Default", [step(1, "Manager", TargetType.RELATIONSHIP, "manager")])
        large = engine.create_workflow(
            "Large", standard_steps(), conditions=WorkflowConditions(amount_min=Decimal("500"))
        )
        assert submitted(engine, "RPT-BIG", amount="1000").workflow_id == large.id
        assert submitted(engine, "RPT-SMALL", amount="100").workflow_id == default.id

    def test_later_edits_do_not_affect_bound_report(self, engine):
        definition = engine.create_workflow("Simple", [step(1, "Manager", TargetType.RELATIONSHIP, "manager")])
        submitted(engine, "RPT-1")

        engine.update_workflow(definition.id, {"steps": [
            step(1, "Manager", TargetType.RELATIONSHIP, "manager"),
            step(2, "Finance", TargetType.ROLE, "finance"),
        ]})

        # Bound to v1, which has a single step
        state = engine.approve("RPT-1", actor("mgr-1"))
        assert state.status == ReportStatus.APPROVED
        assert state.workflow_version == 1

        second = submitted(engine, "RPT-2")
        assert second.workflow_version == 2
        assert engine.approve("RPT-2", actor("mgr-1")).current_step == 2

    def test_only_submitter_may_submit(self, engine, standard_workflow):
        sync(engine, "RPT-1")
        with pytest.raises(ForbiddenError):
            engine.submit("RPT-1", actor("mgr-1", Permission.REPORT_SUBMIT))

    def test_resubmitting_in_review_report_conflicts(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        with pytest.raises(ConflictError):
            engine.submit("RPT-1", actor("emp-1"))

    def test_unknown_report(self, engine, standard_workflow):
        with pytest.raises(NotFoundError):
            engine.submit("RPT-404", actor("emp-1"))

    def test_no_applicable_workflow(self, engine):
        engine.create_workflow("Large only", standard_steps(),
                               conditions=WorkflowConditions(amount_min=Decimal("5000")))
        sync(engine, "RPT-1", amount="10")
        with pytest.raises(NoApplicableWorkflowError):
            engine.submit("RPT-1", actor("emp-1"))

    def test_falls_back_to_configured_default(self, repository, directory, clock):
        bootstrap = ApprovalEngine(repository, directory, clock=clock)
        fallback = bootstrap.create_workflow(
            "Fallback", [step(1, "Manager", TargetType.RELATIONSHIP, "manager")],
            conditions=WorkflowConditions(categories=["never"])
        )
        engine = ApprovalEngine(repository, directory, clock=clock, default_workflow_id=fallback.id)
        assert submitted(engine, "RPT-1").workflow_id == fallback.id

    def test_system_step_auto_resolves(self, engine):
        engine.create_workflow("Compliance first", [
            step(1, "Policy Check", TargetType.SYSTEM, None),
            step(2, "Manager", TargetType.RELATIONSHIP, "manager"),
        ])
        state = submitted(engine, "RPT-1")
        assert state.current_step == 2

        history = engine.audit.history("RPT-1")
        assert len(history) == 1
        assert history[0].action == ApprovalAction.APPROVE
        assert history[0].actor_id is None
        assert history[0].step_number == 1

    def test_every_step_skipped_approves(self, engine):
        engine.create_workflow("Tiny expenses", [
            step(1, "Manager", TargetType.RELATIONSHIP, "manager",
                 skip_if=Predicate("amount", PredicateCondition.LESS_THAN, 100)),
        ])
        state = submitted(engine, "RPT-1", amount="50")
        assert state.status == ReportStatus.APPROVED
        assert state.completed_at is not None
        assert [e.actor_id for e in engine.audit.history("RPT-1")] == [None]

    def test_required_step_still_honours_skip_if(self, engine):
        engine.create_workflow("Training", [
            step(1, "Manager", TargetType.RELATIONSHIP, "manager", required=True,
                 skip_if=Predicate("category", PredicateCondition.EQUALS, "training")),
        ])
        state = submitted(engine, "RPT-1", category="training")
        assert state.status == ReportStatus.APPROVED

        history = engine.audit.history("RPT-1")
        assert [(e.step_number, e.actor_id) for e in history] == [(1, None)]

    def test_non_contiguous_step_numbers(self, engine):
        engine.create_workflow("Sparse", [
            step(20, "Finance", TargetType.ROLE, "finance"),
            step(10, "Manager", TargetType.RELATIONSHIP, "manager"),
        ])
        state = submitted(engine, "RPT-1")
        assert state.current_step == 10
        assert engine.approve("RPT-1", actor("mgr-1")).current_step == 20


class TestApprove:
    """Test approval eligibility and progression"""

    def test_full_approval_chain(self, engine, standard_workflow):
        submitted(engine, "RPT-1")

        state = engine.approve("RPT-1", actor("mgr-1"), "Looks good")
        assert (state.current_step, state.step_instance) == (2, 2)

        state = engine.approve("RPT-1", actor("fin-1"))
        assert (state.current_step, state.step_instance) == (3, 3)

        state = engine.approve("RPT-1", actor("dir-1"))
        assert state.status == ReportStatus.APPROVED
        assert state.completed_at is not None

        history = engine.audit.history("RPT-1")
        assert [e.actor_id for e in history] == ["mgr-1", "fin-1", "dir-1"]
        assert history[0].comment == "Looks good"
        assert history[0].actor_email == "mgr-1@example.com"

    def test_second_approve_after_completion_conflicts(self, engine):
        engine.create_workflow("Simple", [step(1, "Manager", TargetType.RELATIONSHIP, "manager")])
        submitted(engine, "RPT-1")
        assert engine.approve("RPT-1", actor("mgr-1")).status == ReportStatus.APPROVED
        with pytest.raises(ConflictError):
            engine.approve("RPT-1", actor("mgr-1"))
        approvals = [e for e in engine.audit.history("RPT-1") if e.action == ApprovalAction.APPROVE]
        assert len(approvals) == 1

    def test_skipped_steps_never_block(self, engine, standard_workflow):
        submitted(engine, "RPT-1", amount="500", category="training")
        state = engine.approve("RPT-1", actor("mgr-1"))
        assert state.status == ReportStatus.APPROVED

        history = engine.audit.history("RPT-1")
        assert [(e.step_number, e.actor_id) for e in history] == [(1, "mgr-1"), (2, None), (3, None)]
        assert all(e.action == ApprovalAction.APPROVE for e in history)

    def test_ineligible_actor_forbidden(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        with pytest.raises(ForbiddenError):
            engine.approve("RPT-1", actor("fin-1"))

    def test_override_permission(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        state = engine.approve("RPT-1", actor("auditor-1", Permission.WORKFLOW_OVERRIDE))
        assert state.current_step == 2

    def test_self_approval_blocked_even_with_override(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        with pytest.raises(ForbiddenError) as exc_info:
            engine.approve("RPT-1", actor("emp-1", Permission.WORKFLOW_OVERRIDE))
        assert exc_info.value.details["check"] == "direct_self"

    def test_approve_before_submit(self, engine, standard_workflow):
        sync(engine, "RPT-1")
        with pytest.raises(NotFoundError):
            engine.approve("RPT-1", actor("mgr-1"))


class TestReject:
    """Test terminal rejection"""

    def test_reject_is_terminal(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        state = engine.reject("RPT-1", actor("mgr-1"), "Missing hotel receipt", "missing_receipt")
        assert state.status == ReportStatus.REJECTED
        assert state.completed_at is not None

        entry = engine.audit.history("RPT-1")[-1]
        assert entry.action == ApprovalAction.REJECT
        assert entry.rejection_category == "missing_receipt"

        with pytest.raises(ConflictError):
            engine.approve("RPT-1", actor("mgr-1"))
        with pytest.raises(ConflictError):
            engine.reject("RPT-1", actor("mgr-1"), "Rejecting again")
        with pytest.raises(ConflictError):
            engine.return_report("RPT-1", actor("mgr-1"), "Please fix it")

    def test_reject_requires_comment(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        with pytest.raises(ValidationError):
            engine.reject("RPT-1", actor("mgr-1"), "   ")

    def test_submitter_cannot_reject(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        with pytest.raises(ForbiddenError):
            engine.reject("RPT-1", actor("emp-1", Permission.WORKFLOW_OVERRIDE), "Withdrawn by me")


class TestReturn:
    """Test return policies"""

    def test_hard_restart_returns_to_first_step(self, engine, standard_workflow, clock):
        submitted(engine, "RPT-1")
        engine.approve("RPT-1", actor("mgr-1"))
        clock.advance(hours=5)

        state = engine.return_report("RPT-1", actor("fin-1"), "Split the hotel costs")
        assert state.status == ReportStatus.IN_REVIEW
        assert state.current_step == 1
        assert state.step_instance == 3
        assert state.step_started_at == clock.now()

        entry = engine.audit.history("RPT-1")[-1]
        assert entry.action == ApprovalAction.RETURN
        assert entry.step_number == 2

        # Manager has to approve again
        assert engine.approve("RPT-1", actor("mgr-1")).current_step == 2

    def test_soft_restart_resumes_at_returning_step(self, engine):
        engine.create_workflow("Soft", standard_steps(), on_return_policy=ReturnPolicy.SOFT_RESTART)
        submitted(engine, "RPT-1")
        engine.approve("RPT-1", actor("mgr-1"))

        state = engine.return_report("RPT-1", actor("fin-1"), "Attach the receipts")
        assert state.status == ReportStatus.IN_REVIEW
        assert state.current_step == 2
        assert state.step_instance == 3

    def test_return_requiring_resubmission(self, repository, directory, clock):
        engine = ApprovalEngine(repository, directory, clock=clock, return_requires_resubmit=True)
        engine.create_workflow("Standard", standard_steps())
        submitted(engine, "RPT-1")
        engine.approve("RPT-1", actor("mgr-1"))

        state = engine.return_report("RPT-1", actor("fin-1"), "Attach the receipts")
        assert state.status == ReportStatus.RETURNED
        assert state.current_step == 1

        with pytest.raises(ConflictError):
            engine.approve("RPT-1", actor("mgr-1"))

        state = engine.submit("RPT-1", actor("emp-1"))
        assert state.status == ReportStatus.IN_REVIEW
        assert state.current_step == 1
        assert state.workflow_version == 1


class TestStalledSteps:
    """Test unresolvable approvers"""

    def test_missing_manager_stalls_step(self, engine, standard_workflow):
        state = submitted(engine, "RPT-1", submitter="emp-2")
        assert state.status == ReportStatus.IN_REVIEW
        assert state.current_step == 1
        assert "manager" in state.stalled_reason

        with pytest.raises(UnresolvableTargetError):
            engine.approve("RPT-1", actor("mgr-1"))

        state = engine.approve("RPT-1", actor("auditor-1", Permission.WORKFLOW_OVERRIDE))
        assert state.current_step == 2
        assert state.stalled_reason is None


class TestQueries:
    """Test status and pending approval queries"""

    def test_status_before_submission(self, engine, standard_workflow):
        sync(engine, "RPT-1")
        status = engine.get_status("RPT-1")
        assert status["status"] == ReportStatus.PENDING
        assert status["workflow"] is None
        assert status["history"] == []

    def test_status_of_unknown_report(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_status("RPT-404")

    def test_status_in_review(self, engine, standard_workflow, clock):
        submitted(engine, "RPT-1")
        engine.approve("RPT-1", actor("mgr-1"))
        status = engine.get_status("RPT-1")
        assert status["status"] == ReportStatus.IN_REVIEW
        assert status["current_step"] == 2
        assert status["total_steps"] == 3
        assert status["workflow"].id == standard_workflow.id
        assert len(status["history"]) == 1
        assert status["sla_deadline"] > clock.now()

    def test_pending_for_current_approver(self, engine, standard_workflow):
        submitted(engine, "RPT-1")
        assert [p["report_id"] for p in engine.list_pending_for(actor("mgr-1"))] == ["RPT-1"]
        assert engine.list_pending_for(actor("fin-1")) == []

        engine.approve("RPT-1", actor("mgr-1"))
        assert engine.list_pending_for(actor("mgr-1")) == []
        pending = engine.list_pending_for(actor("fin-1"))
        assert pending[0]["step_name"] == "Finance Review"

    def test_sync_cannot_change_submitter(self, engine):
        sync(engine, "RPT-1")
        with pytest.raises(ConflictError):
            sync(engine, "RPT-1", submitter="emp-9")
