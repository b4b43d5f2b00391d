"""
Workflow definition endpoints
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_engine, require_permission
from .schemas import CreateWorkflowRequest, UpdateWorkflowRequest, paginate, workflow_to_response
from ..engine import ApprovalEngine
from ..identity import Actor, Permission


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: CreateWorkflowRequest,
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_CREATE)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Create a workflow definition"""
    definition = engine.create_workflow(
        name=request.name,
        description=request.description,
        conditions=request.conditions.to_conditions() if request.conditions else None,
        steps=[step.to_step() for step in request.steps],
        on_return_policy=request.on_return_policy,
        is_active=request.is_active,
        created_by=actor.id
    )
    return workflow_to_response(definition)


@router.get("")
def list_workflows(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    active_only: bool = Query(False, alias="activeOnly"),
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_VIEW)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """List workflow definitions, paginated"""
    definitions = engine.list_workflows(active_only=active_only)
    return paginate([workflow_to_response(d) for d in definitions], page, limit)


@router.get("/{workflow_id}")
def get_workflow(
    workflow_id: str,
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_VIEW)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Get the current version of a workflow definition"""
    return workflow_to_response(engine.get_workflow(workflow_id))


@router.put("/{workflow_id}")
def update_workflow(
    workflow_id: str,
    request: UpdateWorkflowRequest,
    actor: Actor = Depends(require_permission(Permission.WORKFLOW_EDIT)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Update a workflow definition; bumps its version"""
    definition = engine.update_workflow(workflow_id, request.to_changes(), updated_by=actor.id)
    return workflow_to_response(definition)
