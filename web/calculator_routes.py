"""
Calculator Routes - Stored Calculator Documents and Evaluation
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.calculator import InvestmentCalculator, merge_with_defaults
from core.db.repository import CalculatorRepository
from web.dependencies import get_db


logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api", tags=["calculator"])


class CalculatorDocumentRequest(BaseModel):
    uprn: Optional[str] = None
    analysisId: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class CalculateRequest(BaseModel):
    data: Optional[Dict[str, Any]] = None


def _uprn_from_query(uprn: Optional[str], legacy_id: Optional[str]) -> str:
    # "id" is still sent by older dashboards
    value = uprn or legacy_id
    if not value:
        raise HTTPException(status_code=400, detail="UPRN is required")
    return value


# =============================================================================
# Stored Documents
# =============================================================================

@router.get("/db/calculator")
def get_calculator_data(
    uprn: Optional[str] = Query(default=None),
    id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    record = CalculatorRepository().get_by_id(db, _uprn_from_query(uprn, id))
    if record is None:
        raise HTTPException(status_code=404, detail="Calculator data not found")
    return record.to_dict()


@router.post("/db/calculator")
def save_calculator_data(body: CalculatorDocumentRequest, db: Session = Depends(get_db)):
    uprn = body.uprn or body.analysisId
    if not uprn or not body.data:
        raise HTTPException(status_code=400, detail="UPRN and data are required")

    record = CalculatorRepository().save(db, uprn, body.data)
    db.commit()
    return record.to_dict()


@router.delete("/db/calculator")
def delete_calculator_data(
    uprn: Optional[str] = Query(default=None),
    id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    CalculatorRepository().delete_by_id(db, _uprn_from_query(uprn, id))
    db.commit()
    return {"success": True}


@router.post("/calculator/reset")
def reset_calculator_data(body: CalculatorDocumentRequest, db: Session = Depends(get_db)):
    """Replace a property's calculator document with the blank default."""
    uprn = body.uprn or body.analysisId
    if not uprn:
        raise HTTPException(status_code=400, detail="UPRN is required")

    record = CalculatorRepository().reset(db, uprn)
    db.commit()
    logger.info("Calculator data reset for %s", uprn)

    return {
        "success": True,
        "message": "Calculator data reset to defaults",
        "data": record.data,
        "lastUpdated": record.to_dict()["lastUpdated"],
    }


# =============================================================================
# Evaluation
# =============================================================================

@router.post("/calculator/calculate")
def calculate(body: CalculateRequest):
    """
    Evaluate a calculator document.

    Sections missing from the document take their defaults; the merged
    document is returned with the results.
    """
    try:
        result = InvestmentCalculator().calculate(body.data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "data": merge_with_defaults(body.data), "results": result.to_dict()}
