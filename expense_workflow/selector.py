"""
Workflow Selector

Picks the single workflow definition a report is bound to at submission.
"""

from typing import Optional

from .errors import NoApplicableWorkflowError
from .logging_config import get_logger
from .models import ReportSnapshot, WorkflowDefinition
from .repository import WorkflowRepository

logger = get_logger("expense_workflow.selector")


class WorkflowSelector:
    """Most specific matching active definition, else the configured default"""

    def __init__(self, repository: WorkflowRepository, default_workflow_id: Optional[str] = None):
        self.repository = repository
        self.default_workflow_id = default_workflow_id

    @staticmethod
    def _rank(definition: WorkflowDefinition):
        specificity = definition.conditions.specificity() if definition.conditions else 0
        return (specificity, definition.version, definition.created_at)

    def select(self, report: ReportSnapshot) -> WorkflowDefinition:
        candidates = self.repository.load_active_workflows_matching(report)
        if candidates:
            chosen = max(candidates, key=self._rank)
            logger.debug(
                f"Report {report.report_id} matched {len(candidates)} workflows, chose {chosen.id} v{chosen.version}"
            )
            return chosen

        if self.default_workflow_id:
            default = self.repository.get_workflow(self.default_workflow_id)
            if default is not None and default.is_active:
                return default
            logger.warning(f"Default workflow {self.default_workflow_id} is missing or inactive")

        raise NoApplicableWorkflowError(
            f"No workflow applies to report {report.report_id}",
            {"report_id": report.report_id, "amount": str(report.amount),
             "category": report.category, "department": report.department}
        )
