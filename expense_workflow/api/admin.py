"""
Admin endpoints (SLA tick, audit integrity, in-process directory maintenance)
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from .dependencies import WorkflowSystem, get_system, require_permission
from ..directory import InMemoryDirectory
from ..errors import ConflictError
from ..identity import Actor, Permission


router = APIRouter()


def _local_directory(system: WorkflowSystem) -> InMemoryDirectory:
    if not isinstance(system.directory, InMemoryDirectory):
        raise ConflictError("Directory is managed by an external service")
    return system.directory


@router.post("/sla/tick")
def run_sla_tick(
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_ADMIN)),
    system: WorkflowSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Run one SLA scheduler pass now"""
    summary = system.scheduler.tick()
    return {
        "scanned": summary.scanned,
        "escalations": summary.escalations,
        "autoApprovals": summary.auto_approvals,
        "failures": summary.failures
    }


@router.get("/reports/{report_id}/integrity")
def verify_history_integrity(
    report_id: str,
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_ADMIN)),
    system: WorkflowSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Verify the approval history hash chain of a report"""
    result = system.engine.audit.verify_integrity(report_id)
    return {
        "reportId": report_id,
        "valid": result["valid"],
        "totalEntries": result["total_entries"],
        "hashErrors": result["hash_errors"],
        "chainBreaks": result["chain_breaks"]
    }


@router.put("/directory/roles/{role}/members/{actor_id}")
def add_role_member(
    role: str,
    actor_id: str,
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_ADMIN)),
    system: WorkflowSystem = Depends(get_system)
) -> Dict[str, Any]:
    directory = _local_directory(system)
    directory.add_member(role, actor_id)
    return {"role": role, "members": sorted(directory.members_of_role(role))}


@router.delete("/directory/roles/{role}/members/{actor_id}")
def remove_role_member(
    role: str,
    actor_id: str,
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_ADMIN)),
    system: WorkflowSystem = Depends(get_system)
) -> Dict[str, Any]:
    directory = _local_directory(system)
    directory.remove_member(role, actor_id)
    return {"role": role, "members": sorted(directory.members_of_role(role))}


@router.put("/directory/actors/{actor_id}/relationships/{relationship}/{target_id}")
def set_relationship(
    actor_id: str,
    relationship: str,
    target_id: str,
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_ADMIN)),
    system: WorkflowSystem = Depends(get_system)
) -> Dict[str, Any]:
    directory = _local_directory(system)
    directory.set_relationship(actor_id, relationship, target_id)
    return {"actorId": actor_id, "relationship": relationship, "targetId": target_id}
