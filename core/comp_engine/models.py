"""
Data models for the Comp Engine

Defines structures for nearby sold transactions (as supplied by the
property data provider), the subject property, relaxation buckets and
the persisted comparables selection.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


def _nested(data: Dict[str, Any], *keys: str) -> Any:
    """Walk nested dicts, returning None as soon as a level is missing."""
    current: Any = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def parse_transaction_date(value: Any) -> date:
    """Parse a YYYY-MM-DD (or ISO datetime) transaction date."""
    if isinstance(value, date):
        return value
    if not value:
        raise ValueError("transaction_date is required")
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValueError(f"Invalid transaction_date: {value!r}")


class ValuationStrategy(Enum):
    """
    How selected comparables are folded into a valuation.

    AVERAGE: mean of sale prices
    PRICE_PER_SQM: mean price per square metre x subject internal area
    """
    AVERAGE = "average"
    PRICE_PER_SQM = "price_per_sqm"

    @classmethod
    def from_string(cls, value: str) -> Optional["ValuationStrategy"]:
        """Convert string to ValuationStrategy, case-insensitive."""
        if not value:
            return None
        normalised = value.lower().strip()
        for member in cls:
            if member.value == normalised:
                return member
        return None


@dataclass(frozen=True)
class Transaction:
    """
    A historical sale of a nearby property.

    Immutable and sourced externally; one property may appear in several
    transactions.
    """
    property_id: str
    transaction_date: date
    price: int
    property_type: str

    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    internal_area_sqm: Optional[float] = None
    price_per_sqm: Optional[float] = None

    # Address
    address: str = ""
    postcode: str = ""
    street: str = ""
    tenure: str = ""

    # Location relative to the subject property
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    distance_m: Optional[float] = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        """
        Build a Transaction from the provider's JSON shape.

        Raises:
            ValueError: If the id, date or price is missing or malformed
        """
        property_id = data.get("street_group_property_id")
        if not property_id:
            raise ValueError("street_group_property_id is required")
        if data.get("price") is None:
            raise ValueError(f"price is required for transaction {property_id}")

        tenure = data.get("tenure")
        if isinstance(tenure, dict):
            tenure = tenure.get("tenure_type")

        return cls(
            property_id=str(property_id),
            transaction_date=parse_transaction_date(data.get("transaction_date")),
            price=int(round(float(data["price"]))),
            property_type=data.get("property_type") or "",
            bedrooms=_optional_int(data.get("number_of_bedrooms")),
            bathrooms=_optional_int(data.get("number_of_bathrooms")),
            internal_area_sqm=_optional_float(data.get("internal_area_square_metres")),
            price_per_sqm=_optional_float(data.get("price_per_square_metre")),
            address=_nested(data, "address", "street_group_format", "address_lines") or "",
            postcode=_nested(data, "address", "street_group_format", "postcode") or "",
            street=_nested(data, "address", "simplified_format", "street") or "",
            tenure=tenure or "",
            latitude=_optional_float(_nested(data, "location", "coordinates", "latitude")),
            longitude=_optional_float(_nested(data, "location", "coordinates", "longitude")),
            distance_m=_optional_float(data.get("distance_in_metres")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert back to the provider's JSON shape."""
        result: Dict[str, Any] = {
            "street_group_property_id": self.property_id,
            "address": {
                "street_group_format": {
                    "address_lines": self.address,
                    "postcode": self.postcode,
                },
                "simplified_format": {"street": self.street},
            },
            "property_type": self.property_type,
            "transaction_date": self.transaction_date.isoformat(),
            "price": self.price,
            "internal_area_square_metres": self.internal_area_sqm,
            "price_per_square_metre": self.price_per_sqm,
            "number_of_bedrooms": self.bedrooms,
            "number_of_bathrooms": self.bathrooms,
            "distance_in_metres": self.distance_m,
        }
        if self.has_location:
            result["location"] = {
                "coordinates": {"latitude": self.latitude, "longitude": self.longitude}
            }
        if self.tenure:
            result["tenure"] = {"tenure_type": self.tenure}
        return result


@dataclass
class TargetProperty:
    """
    The subject property being valued.
    """
    property_type: str
    bedrooms: Optional[int]
    bathrooms: Optional[int]
    internal_area_sqm: float

    address: str = ""
    postcode: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetProperty":
        """Build from the dashboard's camelCase JSON shape."""
        return cls(
            property_type=data.get("propertyType") or "",
            bedrooms=_optional_int(data.get("bedrooms")),
            bathrooms=_optional_int(data.get("bathrooms")),
            internal_area_sqm=_optional_float(data.get("internalArea")) or 0.0,
            address=data.get("address") or "",
            postcode=data.get("postcode") or "",
            latitude=_optional_float(_nested(data, "location", "coordinates", "latitude")),
            longitude=_optional_float(_nested(data, "location", "coordinates", "longitude")),
        )


@dataclass(frozen=True)
class RelaxationTier:
    """
    One step of the progressive relaxation ladder.

    max_distance_m == 0 means "same street"; None means unbounded.
    max_days None means any date.
    """
    max_distance_m: Optional[float]
    max_days: Optional[int]
    description: str

    @property
    def same_street(self) -> bool:
        return self.max_distance_m == 0


@dataclass
class Bucket:
    """
    Comparables grouped under one relaxation tier, best candidates first.
    """
    tier: RelaxationTier
    comparables: List[Transaction]

    @property
    def relaxation_strategy(self) -> str:
        return self.tier.description

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relaxationStrategy": self.tier.description,
            "comparables": [t.to_dict() for t in self.comparables],
            "maxDistance": self.tier.max_distance_m,
            "maxDays": self.tier.max_days,
        }


@dataclass
class BucketingResult:
    """
    Result of bucketing.

    Buckets are ordered strictest first and are never empty.
    """
    buckets: List[Bucket]
    total_candidates_considered: int

    @property
    def found_comparables(self) -> bool:
        return bool(self.buckets) and self.total_candidates_considered > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buckets": [b.to_dict() for b in self.buckets],
            "totalCandidatesConsidered": self.total_candidates_considered,
        }


@dataclass
class PropertyWithTransactions:
    """
    A nearby property with all of its sales, newest first.
    """
    property_id: str
    property_type: str
    transactions: List[Transaction]

    address: str = ""
    street: str = ""
    tenure: str = ""
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    distance_m: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def latest(self) -> Transaction:
        """Most recent sale."""
        return self.transactions[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "street_group_property_id": self.property_id,
            "address": self.address,
            "street": self.street,
            "property_type": self.property_type,
            "tenure": self.tenure,
            "number_of_bedrooms": self.bedrooms,
            "number_of_bathrooms": self.bathrooms,
            "distance_in_metres": self.distance_m,
            "transactions": [
                {
                    "transaction_date": t.transaction_date.isoformat(),
                    "price": t.price,
                    "internal_area_square_metres": t.internal_area_sqm,
                    "price_per_square_metre": t.price_per_sqm,
                }
                for t in self.transactions
            ],
        }


@dataclass
class ComparablesSelection:
    """
    The user's chosen comparables for one property (by UPRN).

    selected_ids behaves as an ordered set: insertion order is kept and
    duplicates are never stored.
    """
    uprn: str
    selected_ids: List[str] = field(default_factory=list)
    strategy: ValuationStrategy = ValuationStrategy.AVERAGE
    calculated_valuation: Optional[float] = None

    def __post_init__(self):
        seen = set()
        ordered = []
        for property_id in self.selected_ids:
            if property_id not in seen:
                seen.add(property_id)
                ordered.append(property_id)
        self.selected_ids = ordered

    def is_selected(self, property_id: str) -> bool:
        return property_id in self.selected_ids

    def select(self, property_id: str) -> None:
        if property_id not in self.selected_ids:
            self.selected_ids.append(property_id)

    def deselect(self, property_id: str) -> None:
        if property_id in self.selected_ids:
            self.selected_ids.remove(property_id)

    def toggle(self, property_id: str) -> bool:
        """
        Flip selection of a comparable.

        Returns:
            True if the comparable is now selected
        """
        if self.is_selected(property_id):
            self.deselect(property_id)
            return False
        self.select(property_id)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uprn": self.uprn,
            "selected_comparable_ids": list(self.selected_ids),
            "valuation_strategy": self.strategy.value,
            "calculated_valuation": self.calculated_valuation,
        }


@dataclass
class ValuationResult:
    """
    Outcome of folding selected comparables into a single figure.
    """
    value: Optional[float]
    strategy: ValuationStrategy
    comparables_used: int
    statement: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valuation": self.value,
            "valuation_strategy": self.strategy.value,
            "comparables_used": self.comparables_used,
            "statement": self.statement,
        }
