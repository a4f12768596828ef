"""
Database Routes - Analyses, Tabs and Cached Properties

Persistence endpoints used by the dashboard. Every handler works inside
one request-scoped session and commits once at the end.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from core.db.repository import (
    AnalysisRepository,
    ComparablesRepository,
    LastTabError,
    PropertyRepository,
    TabRepository,
)
from web.dependencies import get_db, require_user_id


logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api/db", tags=["database"])


# =============================================================================
# Request Models
# =============================================================================

class AnalysisRequest(BaseModel):
    """Analysis document; fields other than the ids are optional."""
    model_config = ConfigDict(extra="allow")

    analysisId: Optional[str] = None
    uprn: Optional[str] = None


class TabsRequest(BaseModel):
    tabs: Optional[List[Dict[str, Any]]] = None
    activeTabId: Optional[str] = None


class PropertyRequest(BaseModel):
    uprn: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    lastFetched: Optional[Any] = None
    fetchedCount: Optional[int] = None


# =============================================================================
# Analyses
# =============================================================================

@router.get("/analyses")
def get_analyses(
    id: Optional[str] = Query(default=None),
    recent: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """One analysis by id, or the recent list with ``recent=true``."""
    repo = AnalysisRepository()

    if id:
        record = repo.get_by_id(db, id)
        if record is None:
            raise HTTPException(status_code=404, detail="Analysis not found")
        return record.to_dict()

    if recent == "true":
        return [entry.to_dict() for entry in repo.recent(db)]

    raise HTTPException(status_code=400, detail="Either id or recent parameter is required")


@router.post("/analyses")
def save_analysis(body: AnalysisRequest, db: Session = Depends(get_db)):
    if not body.analysisId or not body.uprn:
        raise HTTPException(status_code=400, detail="analysisId and uprn are required")

    try:
        AnalysisRepository().save(db, body.analysisId, body.uprn, body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()

    logger.info("Saved analysis %s for %s", body.analysisId, body.uprn)
    return {"success": True}


@router.delete("/analyses")
def delete_analysis(id: Optional[str] = Query(default=None), db: Session = Depends(get_db)):
    if not id:
        raise HTTPException(status_code=400, detail="Analysis ID is required")

    AnalysisRepository().delete(db, id)
    db.commit()
    return {"success": True}


# =============================================================================
# Tabs
# =============================================================================

@router.get("/tabs")
def get_tabs(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return TabRepository().state(db, user_id)


@router.post("/tabs")
def save_tabs(
    body: TabsRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    """Replace the user's tabs with the given list."""
    if body.tabs is None:
        raise HTTPException(status_code=400, detail="Tabs array is required")

    try:
        state = TabRepository().sync(db, user_id, body.tabs, body.activeTabId)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()

    return {"success": True, **state}


@router.delete("/tabs")
def delete_tab(
    tabId: Optional[str] = Query(default=None),
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    if not tabId:
        raise HTTPException(status_code=400, detail="tabId is required")

    try:
        TabRepository().delete(db, user_id, tabId)
    except LastTabError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()

    return {"success": True}


# =============================================================================
# Cached Properties
# =============================================================================

@router.get("/properties")
def get_property(uprn: Optional[str] = Query(default=None), db: Session = Depends(get_db)):
    if not uprn:
        raise HTTPException(status_code=400, detail="UPRN parameter is required")

    record = PropertyRepository().get_by_id(db, uprn)
    if record is None:
        raise HTTPException(status_code=404, detail="Property not found")
    return record.to_dict()


@router.post("/properties")
def save_property(body: PropertyRequest, db: Session = Depends(get_db)):
    """
    Cache a property document.

    A default comparables selection is created alongside a newly seen
    property.
    """
    if not body.uprn or body.data is None:
        raise HTTPException(status_code=400, detail="UPRN and data are required")

    try:
        record = PropertyRepository().upsert(
            db, body.uprn, body.data, body.lastFetched, body.fetchedCount
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    ComparablesRepository().ensure_default(db, body.uprn)
    db.commit()

    return {"success": True, "fetchedCount": record.fetched_count}
