"""
Admin API for the insight orchestrator
FastAPI routes for cache inspection, invalidation and entity change intake
"""

from fastapi import APIRouter, HTTPException, Query, Depends, Body
from fastapi.responses import Response
from typing import Optional, Dict, Any
import logging

from prometheus_client import CONTENT_TYPE_LATEST

from ..services.audit import LoggingAuditRecorder
from ..services.config import load_config
from ..services.update_dispatcher import class_channel
from .orchestrator import InsightOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/insights", tags=["insights"])

_orchestrator: Optional[InsightOrchestrator] = None


def get_orchestrator() -> InsightOrchestrator:
    """Get or create the orchestrator instance"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = InsightOrchestrator(load_config())
    return _orchestrator


@router.get("/cache/statistics")
async def get_cache_statistics(
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Cache, request and subscription statistics"""
    return orchestrator.get_statistics()


@router.get("/cache/entries/{key:path}")
async def get_cache_entry(
    key: str,
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Inspect one cache entry, including stale and invalidated ones"""
    entry = orchestrator.cache_store.retained(key)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No cache entry for {key}")

    result = entry.to_dict(orchestrator.cache_store.now())
    result["value"] = entry.value
    result["in_flight"] = orchestrator.coordinator.in_flight(key)
    result["waiters"] = orchestrator.coordinator.waiters(key)
    return result


@router.post("/cache/invalidate")
async def invalidate_cache_key(
    body: Dict[str, Any] = Body(...),
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Invalidate a single key; the next request recomputes it"""
    key = body.get("key")
    if not key or not isinstance(key, str):
        raise HTTPException(status_code=400, detail="'key' is required")

    try:
        invalidated = orchestrator.invalidate(key, actor=body.get("actor"))
    except Exception as e:
        logger.error(f"Error invalidating {key}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    return {"key": key, "invalidated": invalidated}


@router.post("/cache/invalidate-prefix")
async def invalidate_cache_prefix(
    body: Dict[str, Any] = Body(...),
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Invalidate every key sharing a prefix, e.g. "list:patients" """
    prefix = body.get("prefix")
    if not prefix or not isinstance(prefix, str):
        raise HTTPException(status_code=400, detail="'prefix' is required")

    try:
        count = orchestrator.invalidate_by_prefix(prefix, actor=body.get("actor"))
    except Exception as e:
        logger.error(f"Error invalidating prefix {prefix}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    return {"prefix": prefix, "invalidated": count}


@router.post("/entities/{entity_class}/{entity_id}/changed")
async def entity_changed(
    entity_class: str,
    entity_id: str,
    body: Dict[str, Any] = Body(...),
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """
    Intake for committed CRUD mutations from the domain-data layer

    Invalidates derived insights and notifies "entity:<class>" and
    "entity:<class>:<id>" subscribers
    """
    try:
        change = orchestrator.on_entity_changed(entity_class, entity_id, body.get("changeKind"))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error dispatching change for {entity_class}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "entityClass": change.entity_class,
        **change.to_payload(),
        "sequence": orchestrator.broker.last_sequence(class_channel(entity_class)),
    }


@router.get("/channels")
async def list_channels(
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Channels with at least one listener"""
    broker = orchestrator.broker
    channels = [
        {
            "channel": channel,
            "listeners": broker.listener_count(channel),
            "last_sequence": broker.last_sequence(channel),
        }
        for channel in broker.channels()
    ]
    return {"channels": channels, "total_channels": len(channels)}


@router.get("/audit/recent")
async def recent_audit_entries(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of entries to return"),
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Most recent audit entries, newest last"""
    recorder = orchestrator.audit_recorder
    if not isinstance(recorder, LoggingAuditRecorder):
        return {"entries": [], "available": False}
    return {"entries": [entry.to_dict() for entry in recorder.recent(limit)], "available": True}


@router.get("/metrics")
async def metrics(
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Response:
    """Prometheus exposition of orchestrator metrics"""
    if orchestrator.metrics is None:
        raise HTTPException(status_code=404, detail="Metrics are disabled")
    return Response(content=orchestrator.metrics.export(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
async def health_check(
    orchestrator: InsightOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "service": "insight_orchestrator",
        "active_tickets": orchestrator.coordinator.active_tickets,
        "timestamp": orchestrator.cache_store.now().isoformat(),
    }
