"""
Audit Trail Module

Append-only approval history, hash-chained per report with SHA-256 for tamper
detection. Entries that must fire at most once (escalation marks, step
decisions) carry an idempotency key which doubles as the entry id, so the
storage layer's create-only insert rejects duplicates from concurrent
writers, including other service instances.
"""

import hashlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .clock import Clock
from .models import ApprovalAction, ApprovalHistoryEntry, DECISION_ACTIONS
from .repository import WorkflowRepository


def idempotency_key(report_id: str, step_number: int, step_instance: int,
                    action: ApprovalAction, mark: Optional[float] = None) -> str:
    """
    Unique key for once-only history entries.

    Every decision on a step instance (approve, reject, return, auto_approve)
    shares one "decision" slot, so a human approval and a concurrent
    auto-approval can never both land. Escalations are keyed per mark.
    """
    slot = "decision" if action in DECISION_ACTIONS else action.value
    mark_part = "-" if mark is None else f"{mark:g}"
    return f"{report_id}:{step_number}:{step_instance}:{slot}:{mark_part}"


def calculate_hash(entry: ApprovalHistoryEntry) -> str:
    """SHA-256 over every field except current_hash"""
    hash_data = {
        'id': entry.id,
        'created_at': entry.created_at.isoformat(),
        'report_id': entry.report_id,
        'sequence': entry.sequence,
        'step_number': entry.step_number,
        'step_name': entry.step_name,
        'step_instance': entry.step_instance,
        'action': entry.action.value,
        'actor_id': entry.actor_id,
        'actor_email': entry.actor_email,
        'comment': entry.comment,
        'rejection_category': entry.rejection_category,
        'sla_deadline': entry.sla_deadline.isoformat() if entry.sla_deadline else None,
        'was_escalated': entry.was_escalated,
        'previous_hash': entry.previous_hash
    }

    # Create deterministic JSON string
    json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(json_data.encode('utf-8')).hexdigest()


class ApprovalAuditTrail:
    """
    Per-report approval history.

    Callers must hold the report's lock while recording so sequence numbers
    and the hash chain stay linear.
    """

    def __init__(self, repository: WorkflowRepository, clock: Clock):
        self.repository = repository
        self.clock = clock

    def record(
        self,
        report_id: str,
        step_number: int,
        step_name: str,
        step_instance: int,
        action: ApprovalAction,
        actor_id: Optional[str] = None,
        actor_email: Optional[str] = None,
        comment: Optional[str] = None,
        rejection_category: Optional[str] = None,
        sla_deadline: Optional[datetime] = None,
        was_escalated: bool = False,
        key: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> Optional[ApprovalHistoryEntry]:
        """
        Append a history entry.

        Args:
            key: idempotency key; when given it becomes the entry id
            created_at: override for the entry timestamp (defaults to clock time)

        Returns:
            The stored entry, or None if an entry with the same key already exists
        """
        history = self.repository.list_history(report_id)
        now = created_at or self.clock.now()

        entry = ApprovalHistoryEntry(
            id=key or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            report_id=report_id,
            step_number=step_number,
            step_name=step_name,
            action=action,
            actor_id=actor_id,
            actor_email=actor_email,
            comment=comment,
            rejection_category=rejection_category,
            sla_deadline=sla_deadline,
            was_escalated=was_escalated,
            step_instance=step_instance,
            sequence=len(history) + 1,
            idempotency_key=key,
            previous_hash=history[-1].current_hash if history else "",
            current_hash=""  # Will be calculated below
        )
        entry.current_hash = calculate_hash(entry)

        if not self.repository.append_history(entry):
            return None
        return entry

    def history(self, report_id: str) -> List[ApprovalHistoryEntry]:
        return self.repository.list_history(report_id)

    def has_entry(self, report_id: str, key: str) -> bool:
        return any(entry.id == key for entry in self.repository.list_history(report_id))

    def entries_for_instance(self, report_id: str, step_number: int,
                             step_instance: int) -> List[ApprovalHistoryEntry]:
        return [
            entry for entry in self.repository.list_history(report_id)
            if entry.step_number == step_number and entry.step_instance == step_instance
        ]

    def verify_integrity(self, report_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one report's history

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self.repository.list_history(report_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            expected_hash = calculate_hash(entry)
            if entry.current_hash != expected_hash:
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': expected_hash,
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
