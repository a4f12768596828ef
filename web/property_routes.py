"""
Property Routes - Postcode Lookup and Property Data

Address lookup by postcode, property attributes from the upstream data
API, and cached property documents by UPRN.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.db.repository import ComparablesRepository, PropertyRepository
from core.property_data import PropertyDataClient, PropertyDataError, clean_postcode
from web.dependencies import get_db, get_property_client


logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api", tags=["property"])


class PropertyLookupRequest(BaseModel):
    address: Optional[str] = None
    postcode: Optional[str] = None


def _error_response(error: PropertyDataError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content={"error": str(error)})


def extract_uprn(document: Dict[str, Any]) -> Optional[str]:
    """UPRN from a property data document, if present."""
    try:
        uprn = document["data"]["attributes"]["identities"]["ordnance_survey"]["uprn"]
    except (KeyError, TypeError):
        return None
    return str(uprn) if uprn else None


# =============================================================================
# Routes
# =============================================================================

@router.get("/properties/{uprn}")
def get_cached_property(uprn: str, db: Session = Depends(get_db)):
    """Cached property document; never calls the upstream API."""
    record = PropertyRepository().get_by_id(db, uprn)
    if record is None:
        raise HTTPException(status_code=404, detail="Property not found")
    return record.to_dict()


@router.get("/postcode/addresses")
def postcode_addresses(
    postcode: Optional[str] = Query(default=None),
    client: PropertyDataClient = Depends(get_property_client),
):
    if not postcode:
        raise HTTPException(status_code=400, detail="Postcode is required")

    try:
        addresses = client.addresses_for_postcode(postcode)
    except PropertyDataError as e:
        return _error_response(e)

    return {
        "postcode": clean_postcode(postcode),
        "addresses": [address.to_dict() for address in addresses],
    }


@router.post("/property")
def fetch_property(
    body: PropertyLookupRequest,
    client: PropertyDataClient = Depends(get_property_client),
    db: Session = Depends(get_db),
):
    """
    Property attributes for an address.

    The document is cached under its UPRN when the response carries one.
    """
    try:
        document = client.fetch_property(body.address, body.postcode)
    except PropertyDataError as e:
        logger.warning("Property lookup failed for %s, %s: %s", body.address, body.postcode, e)
        return _error_response(e)

    uprn = extract_uprn(document)
    if uprn:
        PropertyRepository().upsert(db, uprn, document)
        ComparablesRepository().ensure_default(db, uprn)
        db.commit()

    return document
