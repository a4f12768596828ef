"""
Appraisor - Core Business Logic

1. Comp Engine (bucketing, AI visual-similarity selection, valuation)
2. Investment Calculator (purchase finance and exit strategies)
3. Refurbishment Estimate (AI scope, catalogue pricing)
4. Property Data (postcode lookup, property attributes, street view)
5. Persistence (SQLAlchemy models and repositories, in core.db)
"""

from .street_view import street_view_url

# Comp Engine
from .comp_engine import (
    Transaction,
    TargetProperty,
    BucketingResult,
    ComparablesSelection,
    ValuationStrategy,
    ValuationResult,
    ComparableBucketer,
    ComparableValuationEngine,
    ComparablesAnalysis,
    VisualSimilaritySelector,
)

# Investment Calculator
from .calculator import (
    InvestmentCalculator,
    CalculatorResult,
    PurchaseType,
    ExitStrategy,
    default_calculator_data,
)

# Refurbishment Estimate
from .refurbishment import (
    RefurbishmentEstimator,
    RefurbishmentEstimate,
    RefurbishmentEstimateError,
    load_cost_catalogue,
)

# Property Data
from .property_data import (
    PropertyDataClient,
    PropertyDataError,
    PropertyNotFoundError,
    PropertyDataAuthError,
    PropertyDataRequestError,
)

__all__ = [
    "street_view_url",
    # Comp Engine
    "Transaction",
    "TargetProperty",
    "BucketingResult",
    "ComparablesSelection",
    "ValuationStrategy",
    "ValuationResult",
    "ComparableBucketer",
    "ComparableValuationEngine",
    "ComparablesAnalysis",
    "VisualSimilaritySelector",
    # Investment Calculator
    "InvestmentCalculator",
    "CalculatorResult",
    "PurchaseType",
    "ExitStrategy",
    "default_calculator_data",
    # Refurbishment Estimate
    "RefurbishmentEstimator",
    "RefurbishmentEstimate",
    "RefurbishmentEstimateError",
    "load_cost_catalogue",
    # Property Data
    "PropertyDataClient",
    "PropertyDataError",
    "PropertyNotFoundError",
    "PropertyDataAuthError",
    "PropertyDataRequestError",
]
