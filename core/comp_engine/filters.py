"""
Comparable bucketing for the Comp Engine

Implements hard filters and progressive relaxation:
- Bedrooms, bathrooms, property type (exact match)
- Internal area (within +/- SIZE_TOLERANCE_PERCENT of the subject)
- Relaxation tiers from same street / 30 days out to any distance / any date
"""

import logging
from datetime import date
from typing import Iterable, List, Sequence, Set, Tuple

from .models import (
    Bucket,
    BucketingResult,
    RelaxationTier,
    TargetProperty,
    Transaction,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Constants
# =============================================================================

# Size tolerance (percent either side of subject internal area)
SIZE_TOLERANCE_PERCENT = 10.0

# Candidates kept per bucket
COMPARABLES_PER_BUCKET = 10

# Distance limits (metres)
QUARTER_MILE_METRES = 402
HALF_MILE_METRES = 805
ONE_MILE_METRES = 1609
TWO_MILES_METRES = 3218

# Strictest first. Each tier is evaluated against the full candidate pool.
RELAXATION_TIERS: Tuple[RelaxationTier, ...] = (
    RelaxationTier(0, 30, "Same street, last 30 days"),
    RelaxationTier(0, 90, "Same street, last 3 months"),
    RelaxationTier(QUARTER_MILE_METRES, 90, "1/4 mile, last 3 months"),
    RelaxationTier(HALF_MILE_METRES, 180, "1/2 mile, last 6 months"),
    RelaxationTier(ONE_MILE_METRES, 365, "1 mile, last year"),
    RelaxationTier(TWO_MILES_METRES, 730, "2 miles, last 2 years"),
    RelaxationTier(None, None, "Any distance, any date"),
)


class ComparableBucketer:
    """
    Narrows nearby transactions into relaxation buckets.

    A transaction must pass ALL hard filters before it can appear in any
    bucket.
    """

    def __init__(
        self,
        reference_date: date = None,
        size_tolerance_percent: float = SIZE_TOLERANCE_PERCENT,
        per_bucket: int = COMPARABLES_PER_BUCKET,
        tiers: Sequence[RelaxationTier] = RELAXATION_TIERS,
    ):
        """
        Initialize bucketer.

        Args:
            reference_date: Date to calculate transaction age from (default: today)
            size_tolerance_percent: Allowed internal area deviation either side
            per_bucket: Maximum candidates kept per bucket
            tiers: Relaxation tiers, strictest first
        """
        self._reference_date = reference_date or date.today()
        self._size_tolerance = size_tolerance_percent
        self._per_bucket = per_bucket
        self._tiers = tuple(tiers)

    @property
    def reference_date(self) -> date:
        return self._reference_date

    def create_buckets(
        self,
        transactions: Iterable[Transaction],
        target: TargetProperty,
        target_street: str,
        exclude_used: bool = False,
    ) -> BucketingResult:
        """
        Bucket transactions by progressive relaxation.

        Args:
            transactions: All nearby transactions
            target: The subject property
            target_street: Subject street name for same-street tiers
            exclude_used: If True, a property placed in an earlier bucket is
                not repeated in later ones

        Returns:
            BucketingResult with non-empty buckets, strictest first
        """
        transactions = list(transactions)
        candidates = self.apply_hard_filters(transactions, target)

        logger.info(
            "Bucketing %d transactions: %d passed hard filters "
            "(type=%s beds=%s baths=%s area=%s)",
            len(transactions),
            len(candidates),
            target.property_type,
            target.bedrooms,
            target.bathrooms,
            target.internal_area_sqm,
        )

        if not candidates:
            return BucketingResult(buckets=[], total_candidates_considered=0)

        buckets: List[Bucket] = []
        used_ids: Set[str] = set()

        for tier in self._tiers:
            matches = [
                t for t in candidates
                if self._matches_tier(t, tier, target_street)
            ]
            if exclude_used:
                matches = [t for t in matches if t.property_id not in used_ids]

            if not matches:
                continue

            ranked = self.rank(matches, target_street)[: self._per_bucket]
            used_ids.update(t.property_id for t in ranked)
            buckets.append(Bucket(tier=tier, comparables=ranked))

        return BucketingResult(
            buckets=buckets,
            total_candidates_considered=len(candidates),
        )

    def apply_hard_filters(
        self,
        transactions: Iterable[Transaction],
        target: TargetProperty,
    ) -> List[Transaction]:
        """Apply non-negotiable hard filters."""
        size_min, size_max = self.size_bounds(target.internal_area_sqm)
        result = []

        for t in transactions:
            # Beds, baths and type must match exactly
            if t.bedrooms != target.bedrooms:
                continue
            if t.bathrooms != target.bathrooms:
                continue
            if t.property_type != target.property_type:
                continue

            # Size must be known and within tolerance
            if t.internal_area_sqm is None:
                continue
            if not size_min <= t.internal_area_sqm <= size_max:
                continue

            result.append(t)

        return result

    def size_bounds(self, internal_area_sqm: float) -> Tuple[float, float]:
        """Inclusive internal area range accepted by the hard filter."""
        factor = self._size_tolerance / 100
        return internal_area_sqm * (1 - factor), internal_area_sqm * (1 + factor)

    def rank(
        self,
        transactions: Iterable[Transaction],
        target_street: str,
    ) -> List[Transaction]:
        """
        Order by priority: same street, then nearer, then more recent.

        Unknown distances sort after all known distances.
        """
        def sort_key(t: Transaction):
            same_street = self.is_same_street(t, target_street)
            distance = t.distance_m if t.distance_m is not None else float("inf")
            return (0 if same_street else 1, distance, self.days_since(t.transaction_date))

        return sorted(transactions, key=sort_key)

    def days_since(self, transaction_date: date) -> int:
        """Absolute age in whole calendar days; tier limits include the boundary day."""
        return abs((self._reference_date - transaction_date).days)

    @staticmethod
    def is_same_street(transaction: Transaction, target_street: str) -> bool:
        """Exact street name match. An unknown subject street matches nothing."""
        if not target_street:
            return False
        return transaction.street == target_street

    def _matches_tier(
        self,
        transaction: Transaction,
        tier: RelaxationTier,
        target_street: str,
    ) -> bool:
        if tier.same_street:
            if not self.is_same_street(transaction, target_street):
                return False
        elif tier.max_distance_m is not None:
            if transaction.distance_m is None:
                return False
            if transaction.distance_m > tier.max_distance_m:
                return False

        if tier.max_days is not None:
            if self.days_since(transaction.transaction_date) > tier.max_days:
                return False

        return True


def parse_transactions(raw: Iterable[dict]) -> List[Transaction]:
    """
    Parse provider JSON into transactions.

    Raises:
        ValueError: On the first malformed entry
    """
    return [Transaction.from_dict(item) for item in raw]
