"""
Comparables Routes - Bucketing, AI Selection and Valuation

JSON API behind the dashboard's comparables panel:
- bucketing of nearby transactions by progressive relaxation
- AI visual-similarity selection (optionally streamed as server-sent events)
- valuation of the selected comparables, and the persisted selection
"""

import json
import logging
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.comp_engine import (
    ComparableBucketer,
    ComparableFilters,
    ComparablesAnalysis,
    ComparablesSelection,
    ComparableValuationEngine,
    SelectionUnavailableError,
    SimilarityScorer,
    SimilarityScoringError,
    TargetProperty,
    Transaction,
    ValuationStrategy,
    VisualSimilaritySelector,
    parse_transactions,
)
from core.comp_engine.similarity import NO_COMPARABLES_MESSAGE
from core.db.repository import ComparablesRepository
from utils.config import Config
from web.dependencies import (
    get_bucketer,
    get_config,
    get_db,
    get_reference_date,
    get_similarity_scorer_factory,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api", tags=["comparables"])

# The plain filter view lists fewer candidates and never repeats a property
FILTER_COMPARABLES_PER_BUCKET = 5


# =============================================================================
# Request Models
# =============================================================================

class ComparablesRequest(BaseModel):
    """Subject property and its nearby transactions."""
    uprn: Optional[str] = None
    nearbyTransactions: Optional[Any] = None
    targetProperty: Optional[Dict[str, Any]] = None
    targetStreet: Optional[str] = ""


class ValuationRequest(BaseModel):
    uprn: Optional[str] = None
    nearbyTransactions: Optional[Any] = None
    selectedComparableIds: List[str] = []
    valuationStrategy: Optional[str] = "average"
    subjectInternalArea: Optional[float] = None
    persist: bool = False


class AnalysisRequest(BaseModel):
    """Comparables panel state: filters, sort and an optional selection change."""
    uprn: Optional[str] = None
    nearbyTransactions: Optional[Any] = None
    subjectStreet: Optional[str] = ""
    subjectInternalArea: Optional[float] = None
    filters: Optional[Dict[str, Any]] = None
    sortBy: Optional[str] = "newest"
    toggleComparableId: Optional[str] = None
    valuationStrategy: Optional[str] = None


class ComparablesDataRequest(BaseModel):
    uprn: Optional[str] = None
    selected_comparable_ids: Optional[List[str]] = None
    valuation_strategy: Optional[str] = None
    calculated_valuation: Optional[float] = None


# =============================================================================
# Helpers
# =============================================================================

def _require_uprn(uprn: Optional[str]) -> str:
    if not uprn:
        raise HTTPException(status_code=400, detail="UPRN is required")
    return uprn


def _transactions(raw: Any) -> List[Transaction]:
    if raw is None or not isinstance(raw, list):
        raise HTTPException(status_code=400, detail="nearbyTransactions array is required")
    try:
        return parse_transactions(raw)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid transaction: {e}")


def _target(raw: Optional[Dict[str, Any]]) -> TargetProperty:
    if not raw:
        raise HTTPException(status_code=400, detail="targetProperty is required")
    try:
        return TargetProperty.from_dict(raw)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid targetProperty: {e}")


def _strategy(value: Optional[str]) -> ValuationStrategy:
    strategy = ValuationStrategy.from_string(value or "average")
    if strategy is None:
        raise HTTPException(status_code=400, detail="Invalid valuation strategy")
    return strategy


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


# =============================================================================
# Bucketing
# =============================================================================

@router.post("/comparables-filter")
def filter_comparables(
    body: ComparablesRequest,
    config: Config = Depends(get_config),
    reference_date: date = Depends(get_reference_date),
):
    """Bucket nearby transactions without AI selection."""
    _require_uprn(body.uprn)
    transactions = _transactions(body.nearbyTransactions)
    target = _target(body.targetProperty)

    bucketer = ComparableBucketer(
        reference_date=reference_date,
        size_tolerance_percent=config.size_tolerance_percent,
        per_bucket=FILTER_COMPARABLES_PER_BUCKET,
    )
    result = bucketer.create_buckets(
        transactions, target, body.targetStreet or "", exclude_used=True
    )

    if not result.found_comparables:
        return {"success": False, "error": NO_COMPARABLES_MESSAGE, "data": result.to_dict()}
    return {"success": True, "data": result.to_dict()}


# =============================================================================
# AI Selection
# =============================================================================

@router.post("/comparables-ai-select")
def ai_select_comparables(
    body: ComparablesRequest,
    x_use_sse: Optional[str] = Header(default=None),
    config: Config = Depends(get_config),
    bucketer: ComparableBucketer = Depends(get_bucketer),
    scorer_factory: Callable[[], SimilarityScorer] = Depends(get_similarity_scorer_factory),
):
    """
    Pick the most visually similar comparables.

    With header ``x-use-sse: true`` progress is streamed as server-sent
    events; otherwise the final result is returned as JSON.
    """
    selector = VisualSimilaritySelector(
        scorer=None,
        scorer_factory=scorer_factory,
        bucketer=bucketer,
        google_maps_api_key=config.google_maps_api_key,
        min_similarity_score=config.min_similarity_score,
        final_count=config.final_comparables_count,
        batch_size=config.candidates_per_request,
        size_tolerance_percent=config.size_tolerance_percent,
    )

    if (x_use_sse or "").lower() == "true":
        return StreamingResponse(
            _stream_selection(selector, body),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    _require_uprn(body.uprn)
    transactions = _transactions(body.nearbyTransactions)
    target = _target(body.targetProperty)

    try:
        selection = selector.select(transactions, target, body.targetStreet or "")
    except SelectionUnavailableError as e:
        return {"success": False, "error": str(e)}
    except SimilarityScoringError as e:
        logger.exception("AI comparables selection failed for %s", body.uprn)
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    logger.info(
        "Selected %d comparables for %s: %s",
        len(selection.matches), body.uprn, ", ".join(selection.property_ids),
    )
    return {"success": True, "data": selection.to_dict()}


def _stream_selection(selector: VisualSimilaritySelector, body: ComparablesRequest) -> Iterator[str]:
    try:
        _require_uprn(body.uprn)
        transactions = _transactions(body.nearbyTransactions)
        target = _target(body.targetProperty)
    except HTTPException as e:
        yield _sse({"type": "error", "message": e.detail})
        return

    try:
        for event in selector.iter_events(transactions, target, body.targetStreet or ""):
            yield _sse(event.to_dict())
    except SimilarityScoringError as e:
        logger.exception("AI comparables selection failed for %s", body.uprn)
        yield _sse({"type": "error", "message": str(e)})


# =============================================================================
# Valuation
# =============================================================================

@router.post("/comparables-valuation")
def value_comparables(body: ValuationRequest, db: Session = Depends(get_db)):
    """Value the subject from the selected comparables, optionally saving the selection."""
    transactions = _transactions(body.nearbyTransactions)
    strategy = _strategy(body.valuationStrategy)

    result = ComparableValuationEngine().valuate_transactions(
        transactions,
        body.selectedComparableIds,
        strategy,
        body.subjectInternalArea,
    )

    response: Dict[str, Any] = {"success": True, "data": result.to_dict()}
    if body.persist:
        selection = ComparablesSelection(
            uprn=_require_uprn(body.uprn),
            selected_ids=body.selectedComparableIds,
            strategy=strategy,
            calculated_valuation=result.value,
        )
        record = ComparablesRepository().save(db, selection)
        db.commit()
        response["data"]["selection"] = record.to_dict()
    return response


@router.post("/comparables-analysis")
def analyse_comparables(
    body: AnalysisRequest,
    db: Session = Depends(get_db),
    reference_date: date = Depends(get_reference_date),
):
    """
    Filtered and sorted comparables for the panel.

    A toggle or strategy change updates and saves the property's selection
    and its valuation.
    """
    uprn = _require_uprn(body.uprn)
    transactions = _transactions(body.nearbyTransactions)
    repo = ComparablesRepository()

    analysis = ComparablesAnalysis(
        transactions,
        subject_street=body.subjectStreet or "",
        subject_internal_area=body.subjectInternalArea,
        selection=repo.get_selection(db, uprn),
        reference_date=reference_date,
    )

    # Validate filters and sort before any selection change is saved
    try:
        properties = analysis.filter(
            ComparableFilters.from_dict(body.filters), body.sortBy or "newest"
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    changed = False
    if body.valuationStrategy is not None:
        analysis.set_strategy(_strategy(body.valuationStrategy))
        changed = True
    if body.toggleComparableId:
        try:
            analysis.toggle(body.toggleComparableId)
        except KeyError:
            raise HTTPException(status_code=400, detail="Comparable not found in nearby transactions")
        changed = True

    valuation = analysis.revalue()
    if changed:
        repo.save(db, analysis.selection)
        db.commit()

    return {
        "success": True,
        "data": {
            "properties": [p.to_dict() for p in properties],
            "propertyTypes": analysis.property_types,
            "selection": analysis.selection.to_dict(),
            "valuation": valuation.to_dict(),
        },
    }


# =============================================================================
# Persisted Selection
# =============================================================================

@router.get("/db/comparables")
def get_comparables_data(uprn: Optional[str] = Query(default=None), db: Session = Depends(get_db)):
    """Stored selection, or the defaults when none is saved."""
    uprn = _require_uprn(uprn)
    record = ComparablesRepository().get_by_id(db, uprn)
    if record is None:
        return ComparablesSelection(uprn=uprn).to_dict()
    return record.to_dict()


@router.post("/db/comparables")
def save_comparables_data(body: ComparablesDataRequest, db: Session = Depends(get_db)):
    uprn = _require_uprn(body.uprn)
    selection = ComparablesSelection(
        uprn=uprn,
        selected_ids=body.selected_comparable_ids or [],
        strategy=_strategy(body.valuation_strategy),
        calculated_valuation=body.calculated_valuation,
    )
    record = ComparablesRepository().save(db, selection)
    db.commit()
    return record.to_dict()
