"""
Comp Engine

Comparable sales selection and valuation:
bucketing of nearby transactions by progressive relaxation, AI visual
similarity selection over the buckets, and valuation of the comparables
a user selects.

Data Source: nearby sold transactions from the property data provider
"""

from .models import (
    Transaction,
    TargetProperty,
    RelaxationTier,
    Bucket,
    BucketingResult,
    PropertyWithTransactions,
    ComparablesSelection,
    ValuationStrategy,
    ValuationResult,
)
from .filters import ComparableBucketer, RELAXATION_TIERS, parse_transactions
from .valuation import ComparableValuationEngine, group_by_property
from .analysis import ComparableFilters, ComparablesAnalysis
from .similarity import (
    SelectionContext,
    SimilarityMatch,
    SimilarityScorer,
    SimilarityScoringError,
    SimilaritySelection,
    SelectionUnavailableError,
    OpenAIVisionScorer,
    VisualSimilaritySelector,
    build_selection_context,
)

__all__ = [
    # Models
    "Transaction",
    "TargetProperty",
    "RelaxationTier",
    "Bucket",
    "BucketingResult",
    "PropertyWithTransactions",
    "ComparablesSelection",
    "ValuationStrategy",
    "ValuationResult",
    # Engine
    "ComparableBucketer",
    "RELAXATION_TIERS",
    "parse_transactions",
    "ComparableValuationEngine",
    "group_by_property",
    "ComparableFilters",
    "ComparablesAnalysis",
    # Similarity selection
    "SelectionContext",
    "SimilarityMatch",
    "SimilarityScorer",
    "SimilarityScoringError",
    "SimilaritySelection",
    "SelectionUnavailableError",
    "OpenAIVisionScorer",
    "VisualSimilaritySelector",
    "build_selection_context",
]

__version__ = "1.0"
