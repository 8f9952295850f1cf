"""
Dashboard API - usage analytics, adapter health and routing rule editing

Read endpoints accept either access level; anything that changes the rule
set requires full access.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from db import get_context_router, get_sqlite_client

from .auth import require_dashboard_access, require_full_access

router = APIRouter(prefix="/dashboard/api", tags=["dashboard"])


class RuleUpsert(BaseModel):
    context: str
    source_id: str
    reason: str = ""


class RuleOrder(BaseModel):
    source_ids: List[str] = Field(default_factory=list)


class ContextDescription(BaseModel):
    description: str = ""


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "invalid_request", "reason": str(exc)})


@router.get("/session")
async def session_info(level: str = Depends(require_dashboard_access)):
    return {"access_level": level, "can_write": level == "full"}


# =============================================================================
# Analytics
# =============================================================================


@router.get("/stats")
async def usage_stats(
    period: str = Query("24h", description="24h, 7d, 30d or all"),
    _level: str = Depends(require_dashboard_access),
):
    try:
        return await get_sqlite_client().usage_stats(period)
    except ValueError as exc:
        raise _bad_request(exc)


@router.get("/tools")
async def tool_call_log(
    period: str = Query("24h"),
    tool_name: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="success or error"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _level: str = Depends(require_dashboard_access),
):
    try:
        return await get_sqlite_client().tool_call_log(
            period, tool_name=tool_name, status=status, limit=limit, offset=offset
        )
    except ValueError as exc:
        raise _bad_request(exc)


@router.get("/health")
async def adapter_health(_level: str = Depends(require_dashboard_access)):
    return {"adapters": await get_sqlite_client().latest_adapter_health()}


@router.get("/health/{adapter_id}")
async def adapter_health_history(
    adapter_id: str,
    limit: int = Query(20, ge=1, le=200),
    _level: str = Depends(require_dashboard_access),
):
    history = await get_sqlite_client().adapter_health_history(adapter_id, limit=limit)
    if not history:
        raise HTTPException(status_code=404, detail=f"No health records for adapter: {adapter_id}")
    return {"adapter_id": adapter_id, "history": history}


# =============================================================================
# Routing
# =============================================================================


@router.get("/sources")
async def list_sources(_level: str = Depends(require_dashboard_access)):
    return {"sources": await get_sqlite_client().list_sources()}


@router.get("/contexts")
async def list_contexts(_level: str = Depends(require_dashboard_access)):
    return {"contexts": await get_context_router().list_contexts()}


@router.put("/contexts/{name}")
async def describe_context(
    name: str,
    body: ContextDescription,
    _level: str = Depends(require_full_access),
):
    try:
        return await get_context_router().describe_context(name, body.description)
    except ValueError as exc:
        raise _bad_request(exc)


@router.get("/routing")
async def list_rules(
    context: Optional[str] = Query(None),
    _level: str = Depends(require_dashboard_access),
):
    return {"rules": await get_context_router().list_rules(context)}


@router.get("/routing/preview")
async def preview_routing(
    context: str = Query(..., description="Context to resolve, with fallback applied"),
    _level: str = Depends(require_dashboard_access),
):
    """What get-source-routing would answer for `context`."""
    router_ = get_context_router()
    try:
        answer = await router_.get_routing(context)
    except ValueError as exc:
        raise _bad_request(exc)
    payload = answer.to_dict()
    payload["text"] = answer.to_text(router_.fallback_context)
    return payload


@router.put("/routing/rules")
async def set_rule(body: RuleUpsert, _level: str = Depends(require_full_access)):
    try:
        return await get_context_router().set_rule(body.context, body.source_id, body.reason)
    except ValueError as exc:
        raise _bad_request(exc)


@router.delete("/routing/rules")
async def delete_rule(
    context: str = Query(...),
    source_id: str = Query(...),
    _level: str = Depends(require_full_access),
):
    try:
        return await get_context_router().delete_rule(context, source_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise _bad_request(exc)


@router.put("/routing/{context}/order")
async def reorder_rules(
    context: str,
    body: RuleOrder,
    _level: str = Depends(require_full_access),
):
    try:
        rules = await get_context_router().reorder(context, body.source_ids)
    except ValueError as exc:
        raise _bad_request(exc)
    return {"context": context, "rules": rules}
