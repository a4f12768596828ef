"""
Valuation Engine for the Comp Engine

Folds user-selected comparables into a single valuation:
- AVERAGE: mean of the latest sale price of each selected property
- PRICE_PER_SQM: mean price per square metre x subject internal area
"""

from collections import OrderedDict
from typing import Iterable, List, Optional, Sequence

from utils.formatting import format_currency

from .models import (
    PropertyWithTransactions,
    Transaction,
    ValuationResult,
    ValuationStrategy,
)


STRATEGY_LABELS = {
    ValuationStrategy.AVERAGE: "simple average",
    ValuationStrategy.PRICE_PER_SQM: "price per square metre",
}


def group_by_property(transactions: Iterable[Transaction]) -> List[PropertyWithTransactions]:
    """
    Group transactions by property id.

    Properties keep first-seen order; each property's transactions are
    sorted newest first.
    """
    grouped: "OrderedDict[str, PropertyWithTransactions]" = OrderedDict()

    for t in transactions:
        existing = grouped.get(t.property_id)
        if existing is None:
            grouped[t.property_id] = PropertyWithTransactions(
                property_id=t.property_id,
                property_type=t.property_type,
                transactions=[t],
                address=t.address,
                street=t.street,
                tenure=t.tenure,
                bedrooms=t.bedrooms,
                bathrooms=t.bathrooms,
                distance_m=t.distance_m,
                latitude=t.latitude,
                longitude=t.longitude,
            )
        else:
            existing.transactions.append(t)

    for prop in grouped.values():
        prop.transactions.sort(key=lambda t: t.transaction_date, reverse=True)

    return list(grouped.values())


class ComparableValuationEngine:
    """
    Computes valuations from selected comparables.

    Every method returns None rather than raising when there is not
    enough evidence to value the subject.
    """

    def valuate(
        self,
        properties: Sequence[PropertyWithTransactions],
        selected_ids: Sequence[str],
        strategy: ValuationStrategy,
        subject_internal_area: Optional[float],
    ) -> ValuationResult:
        """
        Value the subject from the selected comparables.

        Args:
            properties: Nearby properties (see group_by_property)
            selected_ids: Selected property ids
            strategy: Valuation strategy
            subject_internal_area: Subject internal area in square metres

        Returns:
            ValuationResult (value is None if no valuation is possible)
        """
        selected = self.selected_properties(properties, selected_ids)

        if strategy == ValuationStrategy.AVERAGE:
            value = self.average_price(selected)
            used = len(selected)
        else:
            valid = [p for p in selected if self._has_price_per_sqm(p)]
            value = self.price_per_sqm_value(selected, subject_internal_area)
            used = len(valid) if value is not None else 0

        statement = ""
        if value is not None:
            plural = "s" if used != 1 else ""
            statement = (
                f"{format_currency(value)} based on {used} comparable{plural} "
                f"using {STRATEGY_LABELS[strategy]}"
            )

        return ValuationResult(
            value=value,
            strategy=strategy,
            comparables_used=used,
            statement=statement,
        )

    def valuate_transactions(
        self,
        transactions: Iterable[Transaction],
        selected_ids: Sequence[str],
        strategy: ValuationStrategy,
        subject_internal_area: Optional[float],
    ) -> ValuationResult:
        """Convenience wrapper taking raw transactions."""
        return self.valuate(
            group_by_property(transactions),
            selected_ids,
            strategy,
            subject_internal_area,
        )

    @staticmethod
    def selected_properties(
        properties: Sequence[PropertyWithTransactions],
        selected_ids: Sequence[str],
    ) -> List[PropertyWithTransactions]:
        """Properties whose id is selected, in property order."""
        wanted = set(selected_ids)
        return [p for p in properties if p.property_id in wanted]

    @staticmethod
    def average_price(selected: Sequence[PropertyWithTransactions]) -> Optional[float]:
        """
        Mean of the latest sale price of each property.

        Returns None for an empty selection.
        """
        if not selected:
            return None
        total = sum(p.latest.price for p in selected)
        return total / len(selected)

    def price_per_sqm_value(
        self,
        selected: Sequence[PropertyWithTransactions],
        subject_internal_area: Optional[float],
    ) -> Optional[float]:
        """
        Mean price per square metre multiplied by subject area.

        Properties with a missing or zero price per square metre are skipped.
        Returns None if nothing remains or the subject area is not positive.
        """
        if not selected:
            return None
        if not subject_internal_area or subject_internal_area <= 0:
            return None

        valid = [p for p in selected if self._has_price_per_sqm(p)]
        if not valid:
            return None

        mean_ppsqm = sum(p.latest.price_per_sqm for p in valid) / len(valid)
        return mean_ppsqm * subject_internal_area

    @staticmethod
    def _has_price_per_sqm(prop: PropertyWithTransactions) -> bool:
        ppsqm = prop.latest.price_per_sqm
        return ppsqm is not None and ppsqm > 0
