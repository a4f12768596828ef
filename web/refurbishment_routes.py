"""
Refurbishment Routes - AI Refurbishment Estimate
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.refurbishment import (
    CostCatalogue,
    RefurbishmentEstimateError,
    RefurbishmentEstimator,
    ScopeModel,
)
from web.dependencies import get_cost_catalogue, get_scope_model


logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api", tags=["refurbishment"])


class RefurbishmentRequest(BaseModel):
    images: Optional[List[str]] = None
    itemsToInclude: List[str] = []
    itemsToExclude: List[str] = []
    propertyDetails: Optional[Dict[str, Any]] = None


@router.post("/refurbishment-estimate")
def refurbishment_estimate(
    body: RefurbishmentRequest,
    model: ScopeModel = Depends(get_scope_model),
    catalogue: CostCatalogue = Depends(get_cost_catalogue),
):
    """
    Estimate refurbishment costs from property photos.

    The model proposes items and quantities only; prices come from the
    cost catalogue.
    """
    if not body.images:
        raise HTTPException(status_code=400, detail="No images provided")

    estimator = RefurbishmentEstimator(model, catalogue)
    try:
        estimate = estimator.estimate(
            body.images,
            items_to_include=body.itemsToInclude,
            items_to_exclude=body.itemsToExclude,
            property_details=body.propertyDetails,
        )
    except RefurbishmentEstimateError as e:
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    return {"success": True, "data": estimate.to_dict()}
