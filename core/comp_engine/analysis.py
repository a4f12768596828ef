"""
Comparables Analysis

One component behind the dashboard's comparables panel: groups nearby
transactions by property, applies the user's filters and sort order, and
keeps the comparables selection and its valuation in step.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .filters import HALF_MILE_METRES, ONE_MILE_METRES, QUARTER_MILE_METRES
from .models import (
    ComparablesSelection,
    PropertyWithTransactions,
    Transaction,
    ValuationResult,
    ValuationStrategy,
)
from .valuation import ComparableValuationEngine, group_by_property


logger = logging.getLogger(__name__)


ANY = "any"

DISTANCE_LIMITS: Dict[str, int] = {
    "quarter_mile": QUARTER_MILE_METRES,
    "half_mile": HALF_MILE_METRES,
    "one_mile": ONE_MILE_METRES,
}

SORT_OPTIONS = ("newest", "oldest", "price-high", "price-low", "closest")
DEFAULT_SORT = "newest"


@dataclass
class ComparableFilters:
    """
    Dashboard filters. String values mirror the UI controls.

    bedrooms: "Any", "1".."4" or "5+"
    bathrooms: "Any", "1".."3" or "4+"
    transaction_date: "any" or a number of days back ("0" also means any)
    property_type: "Any" or an exact property type
    distance: "any", "same_street", "quarter_mile", "half_mile", "one_mile"
    """
    bedrooms: str = "Any"
    bathrooms: str = "Any"
    transaction_date: str = ANY
    property_type: str = "Any"
    distance: str = ANY

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ComparableFilters":
        data = data or {}
        return cls(
            bedrooms=str(data.get("bedrooms", "Any")),
            bathrooms=str(data.get("bathrooms", "Any")),
            transaction_date=str(data.get("transactionDate", ANY)),
            property_type=str(data.get("propertyType", "Any")),
            distance=str(data.get("distance", ANY)),
        )


def _is_any(value: str) -> bool:
    return value.strip().lower() == ANY


def _matches_count(actual: Optional[int], wanted: str) -> bool:
    """Exact count, or "N+" for at-least."""
    if _is_any(wanted):
        return True
    count = actual or 0
    if wanted.endswith("+"):
        return count >= int(wanted[:-1])
    return count == int(wanted)


class ComparablesAnalysis:
    """
    Comparables panel for one subject property.

    Args:
        transactions: Nearby sold transactions
        subject_street: Subject street name (for the same-street filter)
        subject_internal_area: Subject internal area in square metres
        selection: Persisted selection to start from
        reference_date: "Today" for date filters (default: today)
    """

    def __init__(
        self,
        transactions: Iterable[Transaction],
        subject_street: str,
        subject_internal_area: Optional[float],
        selection: ComparablesSelection,
        reference_date: date = None,
    ):
        self._properties = group_by_property(transactions)
        self._by_id = {p.property_id: p for p in self._properties}
        self._subject_street = subject_street
        self._subject_area = subject_internal_area
        self._selection = selection
        self._reference_date = reference_date or date.today()
        self._engine = ComparableValuationEngine()

    @property
    def properties(self) -> List[PropertyWithTransactions]:
        return list(self._properties)

    @property
    def selection(self) -> ComparablesSelection:
        return self._selection

    @property
    def property_types(self) -> List[str]:
        """Distinct property types for the type filter."""
        return sorted({p.property_type or "Unknown" for p in self._properties})

    def get(self, property_id: str) -> Optional[PropertyWithTransactions]:
        return self._by_id.get(property_id)

    # =========================================================================
    # Filtering & sorting
    # =========================================================================

    def filter(
        self,
        filters: ComparableFilters,
        sort_by: str = DEFAULT_SORT,
    ) -> List[PropertyWithTransactions]:
        """
        Properties matching the filters, in the requested order.

        Raises:
            ValueError: On an unknown sort option or malformed filter value
        """
        if sort_by not in SORT_OPTIONS:
            raise ValueError(f"Unknown sort option: {sort_by}")

        matched = [p for p in self._properties if self._matches(p, filters)]
        return sorted(matched, key=self._sort_key(sort_by))

    def _matches(self, prop: PropertyWithTransactions, filters: ComparableFilters) -> bool:
        if not _matches_count(prop.bedrooms, filters.bedrooms):
            return False
        if not _matches_count(prop.bathrooms, filters.bathrooms):
            return False

        if not _is_any(filters.transaction_date):
            days_back = int(filters.transaction_date)
            if days_back and not any(
                self._in_date_range(t.transaction_date, days_back)
                for t in prop.transactions
            ):
                return False

        if not _is_any(filters.property_type):
            if (prop.property_type or "Unknown") != filters.property_type:
                return False

        if not _is_any(filters.distance):
            if filters.distance == "same_street":
                if not self._subject_street or prop.street != self._subject_street:
                    return False
            elif filters.distance in DISTANCE_LIMITS:
                if (prop.distance_m or 0) > DISTANCE_LIMITS[filters.distance]:
                    return False
            else:
                raise ValueError(f"Unknown distance filter: {filters.distance}")

        return True

    def _in_date_range(self, transaction_date: date, days_back: int) -> bool:
        # Future-dated transactions are never in range
        if transaction_date > self._reference_date:
            return False
        return transaction_date >= self._reference_date - timedelta(days=days_back)

    @staticmethod
    def _sort_key(sort_by: str) -> Callable[[PropertyWithTransactions], object]:
        if sort_by == "price-high":
            return lambda p: -p.latest.price
        if sort_by == "price-low":
            return lambda p: p.latest.price
        if sort_by == "oldest":
            return lambda p: p.latest.transaction_date
        if sort_by == "closest":
            return lambda p: p.distance_m or 0
        return lambda p: -p.latest.transaction_date.toordinal()

    # =========================================================================
    # Selection
    # =========================================================================

    def toggle(self, property_id: str) -> ValuationResult:
        """
        Select or deselect a comparable and revalue.

        Raises:
            KeyError: If the property is not among the nearby transactions
        """
        if property_id not in self._by_id:
            raise KeyError(property_id)
        selected = self._selection.toggle(property_id)
        logger.debug(
            "Comparable %s %s for %s",
            property_id,
            "selected" if selected else "deselected",
            self._selection.uprn,
        )
        return self.revalue()

    def set_strategy(self, strategy: ValuationStrategy) -> ValuationResult:
        """Switch valuation strategy and revalue."""
        self._selection.strategy = strategy
        return self.revalue()

    def selected_properties(self) -> List[PropertyWithTransactions]:
        """Selected properties in selection order."""
        return [
            self._by_id[pid] for pid in self._selection.selected_ids
            if pid in self._by_id
        ]

    def revalue(self) -> ValuationResult:
        """Recompute the valuation and store it on the selection."""
        result = self._engine.valuate(
            self._properties,
            self._selection.selected_ids,
            self._selection.strategy,
            self._subject_area,
        )
        self._selection.calculated_valuation = result.value
        return result
