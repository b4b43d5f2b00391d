"""
Workflow Repository

Persistence collaborator for the engine. The engine never touches storage
tables directly; it goes through WorkflowRepository, which is injected into
its constructor. StorageWorkflowRepository maps the repository onto any
StorageInterface backend.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import List, Optional

from .models import (
    WorkflowDefinition, ReportSnapshot, ReportWorkflowState,
    ApprovalHistoryEntry, ReportStatus
)
from .storage import StorageInterface


class WorkflowRepository(ABC):
    """Storage operations the workflow engine depends on"""

    # Workflow definitions

    @abstractmethod
    def save_workflow(self, definition: WorkflowDefinition, expected_version: Optional[int]) -> bool:
        """
        Store a definition and its immutable version snapshot.

        expected_version is the version currently stored (None for a new
        definition). Returns False if another writer changed it first.
        """
        pass

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        pass

    @abstractmethod
    def list_workflows(self, active_only: bool = False) -> List[WorkflowDefinition]:
        pass

    @abstractmethod
    def load_active_workflows_matching(self, report: ReportSnapshot) -> List[WorkflowDefinition]:
        """Active definitions whose conditions (if any) all match the report"""
        pass

    @abstractmethod
    def load_workflow_version(self, workflow_id: str, version: int) -> Optional[WorkflowDefinition]:
        pass

    # Report snapshots and state

    @abstractmethod
    def save_report_snapshot(self, report: ReportSnapshot) -> None:
        pass

    @abstractmethod
    def load_report_snapshot(self, report_id: str) -> Optional[ReportSnapshot]:
        pass

    @abstractmethod
    def load_report_state(self, report_id: str) -> Optional[ReportWorkflowState]:
        pass

    @abstractmethod
    def save_report_state(self, state: ReportWorkflowState, expected_revision: Optional[int]) -> bool:
        """Compare-and-swap save on revision; None means the state must not exist yet"""
        pass

    @abstractmethod
    def list_report_states(self, status: Optional[ReportStatus] = None) -> List[ReportWorkflowState]:
        pass

    # Approval history

    @abstractmethod
    def append_history(self, entry: ApprovalHistoryEntry) -> bool:
        """Append an entry; False if an entry with the same id already exists"""
        pass

    @abstractmethod
    def list_history(self, report_id: str) -> List[ApprovalHistoryEntry]:
        """History for a report ordered by created_at, then sequence"""
        pass

    @contextmanager
    def atomic(self):
        yield


class StorageWorkflowRepository(WorkflowRepository):
    """Repository backed by a StorageInterface (in-memory or SQLite)"""

    DEFINITIONS = "workflow_definitions"
    VERSIONS = "workflow_versions"
    STATES = "report_workflow_states"
    HISTORY = "approval_history"
    SNAPSHOTS = "report_snapshots"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self._write_lock = threading.RLock()

        # Create tables up front so no DDL runs inside a transaction
        for table in (self.DEFINITIONS, self.VERSIONS, self.STATES, self.HISTORY, self.SNAPSHOTS):
            self.storage.count(table)

    @staticmethod
    def _version_key(workflow_id: str, version: int) -> str:
        return f"{workflow_id}:v{version}"

    @contextmanager
    def atomic(self):
        # A single connection is shared by every thread, so transactions are serialized
        with self._write_lock:
            with self.storage.atomic():
                yield

    def save_workflow(self, definition: WorkflowDefinition, expected_version: Optional[int]) -> bool:
        data = definition.to_dict()
        with self.atomic():
            if not self.storage.compare_and_save(self.DEFINITIONS, definition.id, data,
                                                 'version', expected_version):
                return False
            # Version snapshots are write-once
            self.storage.insert(self.VERSIONS, self._version_key(definition.id, definition.version), data)
        return True

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        data = self.storage.load(self.DEFINITIONS, workflow_id)
        if not data:
            return None
        return WorkflowDefinition.from_dict(data)

    def list_workflows(self, active_only: bool = False) -> List[WorkflowDefinition]:
        if active_only:
            rows = self.storage.find(self.DEFINITIONS, {'is_active': True})
        else:
            rows = self.storage.load_all(self.DEFINITIONS)
        definitions = [WorkflowDefinition.from_dict(row) for row in rows]
        return sorted(definitions, key=lambda d: d.created_at)

    def load_active_workflows_matching(self, report: ReportSnapshot) -> List[WorkflowDefinition]:
        return [
            definition for definition in self.list_workflows(active_only=True)
            if definition.conditions is None or definition.conditions.matches(report)
        ]

    def load_workflow_version(self, workflow_id: str, version: int) -> Optional[WorkflowDefinition]:
        data = self.storage.load(self.VERSIONS, self._version_key(workflow_id, version))
        if not data:
            return None
        return WorkflowDefinition.from_dict(data)

    def save_report_snapshot(self, report: ReportSnapshot) -> None:
        self.storage.save(self.SNAPSHOTS, report.report_id, report.to_dict())

    def load_report_snapshot(self, report_id: str) -> Optional[ReportSnapshot]:
        data = self.storage.load(self.SNAPSHOTS, report_id)
        if not data:
            return None
        return ReportSnapshot.from_dict(data)

    def load_report_state(self, report_id: str) -> Optional[ReportWorkflowState]:
        data = self.storage.load(self.STATES, report_id)
        if not data:
            return None
        return ReportWorkflowState.from_dict(data)

    def save_report_state(self, state: ReportWorkflowState, expected_revision: Optional[int]) -> bool:
        return self.storage.compare_and_save(
            self.STATES, state.report_id, state.to_dict(), 'revision', expected_revision
        )

    def list_report_states(self, status: Optional[ReportStatus] = None) -> List[ReportWorkflowState]:
        if status is not None:
            rows = self.storage.find(self.STATES, {'status': status.value})
        else:
            rows = self.storage.load_all(self.STATES)
        return [ReportWorkflowState.from_dict(row) for row in rows]

    def append_history(self, entry: ApprovalHistoryEntry) -> bool:
        return self.storage.insert(self.HISTORY, entry.id, entry.to_dict())

    def list_history(self, report_id: str) -> List[ApprovalHistoryEntry]:
        rows = self.storage.find(self.HISTORY, {'report_id': report_id})
        entries = [ApprovalHistoryEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: (e.created_at, e.sequence))
        return entries
