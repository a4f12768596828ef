"""
Shared FastAPI dependencies.

Everything a router needs from outside the request (configuration, the
database session, AI backends, upstream API clients) comes through here so
tests can swap it with app.dependency_overrides.
"""

from datetime import date
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException

from core.comp_engine import (
    ComparableBucketer,
    OpenAIVisionScorer,
    SimilarityScorer,
    SimilarityScoringError,
)
from core.db.session import get_db  # noqa: F401  (re-exported for routers)
from core.property_data import PropertyDataClient
from core.refurbishment import (
    CostCatalogue,
    OpenAIScopeModel,
    ScopeModel,
    load_cost_catalogue,
)
from utils.config import Config


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.load()


def get_reference_date() -> date:
    """'Today' for transaction ages."""
    return date.today()


def get_bucketer(
    config: Config = Depends(get_config),
    reference_date: date = Depends(get_reference_date),
) -> ComparableBucketer:
    return ComparableBucketer(
        reference_date=reference_date,
        size_tolerance_percent=config.size_tolerance_percent,
        per_bucket=config.comparables_per_bucket,
    )


def _require_openai_key(config: Config) -> str:
    if not config.openai_api_key:
        raise HTTPException(status_code=500, detail="OpenAI API key not configured")
    return config.openai_api_key


def get_similarity_scorer_factory(
    config: Config = Depends(get_config),
) -> Callable[[], SimilarityScorer]:
    """
    Builder for the vision scorer.

    The key is checked only when scoring starts; selections that end
    before scoring never touch OpenAI.
    """
    def build() -> SimilarityScorer:
        if not config.openai_api_key:
            raise SimilarityScoringError("OpenAI API key not configured")
        return OpenAIVisionScorer.from_api_key(config.openai_api_key, model=config.openai_model)

    return build


def get_scope_model(config: Config = Depends(get_config)) -> ScopeModel:
    return OpenAIScopeModel.from_api_key(_require_openai_key(config), model=config.openai_model)


def get_cost_catalogue(config: Config = Depends(get_config)) -> CostCatalogue:
    return load_cost_catalogue(config.refurbishment_costs_path)


def get_property_client(config: Config = Depends(get_config)) -> PropertyDataClient:
    return PropertyDataClient(
        street_api_key=config.street_api_key,
        ideal_postcodes_api_key=config.ideal_postcodes_api_key,
        timeout=config.request_timeout,
    )


def require_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    Identify the user from the X-User-Id header.

    Raises:
        HTTPException(401) if the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()
