"""
Property data providers.

Looks up addresses for a UK postcode (Ideal Postcodes) and fetches the
property attribute document for an address (Street Data API). Both are
plain JSON-over-HTTPS calls made with a shared requests.Session.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Final, List, Optional

import requests


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

IDEAL_POSTCODES_URL = "https://api.ideal-postcodes.co.uk/v1/postcodes/{postcode}"
STREET_DATA_URL = "https://api.data.street.co.uk/street-data-api/v2/properties/addresses"
STREET_DATA_TIER = "core"
REQUEST_TIMEOUT_SECONDS = 30

# Matches formats: AA9A 9AA, A9A 9AA, A9 9AA, A99 9AA, AA9 9AA, AA99 9AA
UK_POSTCODE_REGEX: Final = re.compile(
    r"^([A-Z]{1,2}[0-9][A-Z0-9]?\s?[0-9][A-Z]{2})$", re.IGNORECASE
)


# =============================================================================
# Errors
# =============================================================================

class PropertyDataError(Exception):
    """An upstream property data request failed."""

    status_code = 500


class PropertyNotFoundError(PropertyDataError):
    status_code = 404


class PropertyDataAuthError(PropertyDataError):
    """The upstream API rejected our credentials."""

    status_code = 401


class PropertyDataRequestError(PropertyDataError):
    """The upstream API rejected the address or postcode."""

    status_code = 400


# =============================================================================
# Postcodes
# =============================================================================

def validate_uk_postcode(postcode: str) -> bool:
    """Validate UK postcode format."""
    if not postcode:
        return False
    normalised = " ".join(postcode.upper().split())
    return bool(UK_POSTCODE_REGEX.match(normalised))


def clean_postcode(postcode: str) -> str:
    """Uppercase with all whitespace removed, as the lookup API expects."""
    return re.sub(r"\s+", "", postcode or "").upper()


def normalise_uk_postcode(postcode: str) -> str:
    """
    Normalise UK postcode to standard format.

    Ensures single space between outward and inward codes.
    """
    clean = clean_postcode(postcode)
    if len(clean) >= 4:
        return f"{clean[:-3]} {clean[-3:]}"
    return clean


@dataclass
class AddressMatch:
    """One address returned for a postcode."""
    id: Optional[str]
    address: str
    postcode: str
    uprn: Optional[str]
    building_name: str = ""
    building_number: str = ""
    line_1: str = ""
    line_2: str = ""
    line_3: str = ""
    post_town: str = ""
    county: str = ""

    @property
    def full_address(self) -> str:
        return f"{self.address}, {self.postcode}"

    @classmethod
    def from_ideal_postcodes(cls, data: Dict[str, Any]) -> "AddressMatch":
        line_1 = data.get("line_1") or ""
        line_2 = data.get("line_2") or ""
        uprn = data.get("uprn")
        return cls(
            id=data.get("id"),
            address=f"{line_1}, {line_2}" if line_2 else line_1,
            postcode=data.get("postcode") or "",
            uprn=str(uprn) if uprn not in (None, "") else None,
            building_name=data.get("building_name") or "",
            building_number=str(data.get("building_number") or ""),
            line_1=line_1,
            line_2=line_2,
            line_3=data.get("line_3") or "",
            post_town=data.get("post_town") or "",
            county=data.get("county") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "postcode": self.postcode,
            "full_address": self.full_address,
            "uprn": self.uprn,
            "building_name": self.building_name,
            "building_number": self.building_number,
            "line_1": self.line_1,
            "line_2": self.line_2,
            "line_3": self.line_3,
            "post_town": self.post_town,
            "county": self.county,
        }


# =============================================================================
# Client
# =============================================================================

class PropertyDataClient:
    """
    Client for the postcode lookup and property data APIs.

    Args:
        street_api_key: Street Data API key
        ideal_postcodes_api_key: Ideal Postcodes API key
        timeout: Request timeout in seconds
        session: Optional requests.Session (one is created if omitted)
    """

    def __init__(
        self,
        street_api_key: str = "",
        ideal_postcodes_api_key: str = "",
        timeout: int = REQUEST_TIMEOUT_SECONDS,
        session: requests.Session = None,
    ):
        self._street_api_key = street_api_key
        self._ideal_postcodes_api_key = ideal_postcodes_api_key
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def addresses_for_postcode(self, postcode: str) -> List[AddressMatch]:
        """
        Addresses registered at a postcode.

        Raises:
            PropertyDataRequestError: If the postcode is malformed
            PropertyNotFoundError: If the postcode is unknown upstream
            PropertyDataError: If the key is missing or the request fails
        """
        if not self._ideal_postcodes_api_key:
            raise PropertyDataError("API key not configured")
        if not validate_uk_postcode(postcode):
            raise PropertyDataRequestError(f"Invalid UK postcode: {postcode}")

        clean = clean_postcode(postcode)
        logger.info("Looking up addresses for postcode %s", clean)

        try:
            response = self._session.get(
                IDEAL_POSTCODES_URL.format(postcode=clean),
                params={"api_key": self._ideal_postcodes_api_key},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.exception("Postcode lookup failed for %s", clean)
            raise PropertyDataError("Failed to fetch addresses for postcode") from e

        if response.status_code == 404:
            raise PropertyNotFoundError("Postcode not found")
        if not response.ok:
            logger.error(
                "Postcode lookup error %s for %s: %s",
                response.status_code, clean, response.text[:500],
            )
            raise PropertyDataError("Failed to fetch addresses for postcode")

        results = response.json().get("result") or []
        logger.info("Postcode %s returned %d addresses", clean, len(results))
        return [AddressMatch.from_ideal_postcodes(item) for item in results]

    def fetch_property(self, address: str, postcode: str) -> Dict[str, Any]:
        """
        Property attribute document for an address.

        Raises:
            PropertyDataAuthError: On upstream 401
            PropertyNotFoundError: On upstream 404
            PropertyDataRequestError: On upstream 400 or missing input
            PropertyDataError: On any other failure
        """
        if not address or not postcode:
            raise PropertyDataRequestError("Address and postcode are required")

        try:
            response = self._session.post(
                STREET_DATA_URL,
                params={"tier": STREET_DATA_TIER},
                headers={"x-api-key": self._street_api_key},
                json={"data": {"address": address, "postcode": postcode}},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.exception("Property data request failed for %s, %s", address, postcode)
            raise PropertyDataError("Failed to fetch property data. Please try again later.") from e

        if response.status_code == 401:
            raise PropertyDataAuthError(
                "API authentication failed. Please check your API key configuration."
            )
        if response.status_code == 404:
            raise PropertyNotFoundError(
                "Property not found. Please check the address and postcode."
            )
        if response.status_code == 400:
            raise PropertyDataRequestError(
                "Invalid address or postcode format. Please check your input."
            )
        if not response.ok:
            logger.error(
                "Property data error %s for %s, %s: %s",
                response.status_code, address, postcode, response.text[:500],
            )
            raise PropertyDataError("Failed to fetch property data. Please try again later.")

        return response.json()
