"""
Approver inbox
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from .dependencies import get_engine, require_permission
from .schemas import paginate, pending_to_response
from ..engine import ApprovalEngine
from ..identity import Actor, Permission


router = APIRouter()


@router.get("/pending")
def list_pending_approvals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(require_permission(Permission.REPORT_APPROVE)),
    engine: ApprovalEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Reports waiting on a decision from the caller"""
    pending = engine.list_pending_for(actor)
    return paginate([pending_to_response(item) for item in pending], page, limit)
