"""
Refurbishment Estimate

A vision model looks at property photos and proposes a scope of work:
which catalogue items are needed and in what quantity. Prices are never
taken from the model; every item is priced here from the cost catalogue
at the three finish levels (basic, standard, premium).
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ValidationError


logger = logging.getLogger(__name__)


LEVELS = ("basic", "standard", "premium")
PRICE_UNAVAILABLE = "price unavailable"
MAX_SUMMARY_CHARS = 300


class RefurbishmentEstimateError(Exception):
    """The estimate could not be produced."""


# =============================================================================
# Cost catalogue
# =============================================================================

@dataclass(frozen=True)
class CatalogueItem:
    category: str
    name: str
    unit: str
    description: str
    cost_basic: Optional[float]
    cost_standard: Optional[float]
    cost_premium: Optional[float]

    def unit_cost(self, level: str) -> float:
        value = getattr(self, f"cost_{level}")
        return float(value) if value is not None else 0.0


class CostCatalogue:
    """
    Refurbishment items with unit costs per finish level.

    File format:
        {"items": [{"category": "...", "items": [
            {"name", "unit", "description", "cost_basic", "cost_standard", "cost_premium"}
        ]}]}
    """

    def __init__(self, items: Sequence[CatalogueItem]):
        self._items = list(items)
        self._by_name = {item.name: item for item in self._items}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostCatalogue":
        items = []
        for category in data.get("items") or []:
            for entry in category.get("items") or []:
                items.append(CatalogueItem(
                    category=category.get("category", ""),
                    name=entry["name"],
                    unit=entry.get("unit", ""),
                    description=entry.get("description", ""),
                    cost_basic=_number_or_none(entry.get("cost_basic")),
                    cost_standard=_number_or_none(entry.get("cost_standard")),
                    cost_premium=_number_or_none(entry.get("cost_premium")),
                ))
        return cls(items)

    @classmethod
    def from_file(cls, path: str) -> "CostCatalogue":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def __len__(self) -> int:
        return len(self._items)

    def get(self, name: str) -> Optional[CatalogueItem]:
        return self._by_name.get(name)

    def listing(self) -> List[Dict[str, str]]:
        """Catalogue without prices, as shown to the model."""
        return [
            {
                "category": item.category,
                "name": item.name,
                "unit": item.unit,
                "description": item.description,
            }
            for item in self._items
        ]


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


@lru_cache(maxsize=4)
def load_cost_catalogue(path: str) -> CostCatalogue:
    """Load and cache the catalogue at path."""
    catalogue = CostCatalogue.from_file(path)
    logger.info("Loaded %d refurbishment catalogue items from %s", len(catalogue), path)
    return catalogue


# =============================================================================
# Estimate structures
# =============================================================================

class ScopeItem(BaseModel):
    """One line of work proposed by the model (no prices)."""
    category: str
    item_name: str
    description: str = ""
    quantity: float
    unit: str = ""
    notes: str = ""


class ScopeProposal(BaseModel):
    items: List[ScopeItem] = []
    summary: str = ""
    error: str = ""


@dataclass
class PricedItem:
    category: str
    item_name: str
    description: str
    quantity: float
    unit: str
    unit_cost_basic: float
    total_cost_basic: float
    unit_cost_standard: float
    total_cost_standard: float
    unit_cost_premium: float
    total_cost_premium: float
    notes: str


@dataclass
class RefurbishmentEstimate:
    items: List[PricedItem] = field(default_factory=list)
    summary: str = ""
    error: str = ""

    def total(self, level: str) -> float:
        return sum(getattr(item, f"total_cost_{level}") for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [asdict(item) for item in self.items],
            "total_cost_basic": self.total("basic"),
            "total_cost_standard": self.total("standard"),
            "total_cost_premium": self.total("premium"),
            "summary": self.summary,
            "error": self.error,
        }


def price_scope(proposal: ScopeProposal, catalogue: CostCatalogue) -> RefurbishmentEstimate:
    """
    Price a proposed scope from the catalogue.

    Items not in the catalogue (or with no costs) are priced at zero and
    noted as "price unavailable".
    """
    priced = []
    for scope in proposal.items:
        entry = catalogue.get(scope.item_name)
        unit_costs = {
            level: entry.unit_cost(level) if entry else 0.0 for level in LEVELS
        }

        notes = scope.notes
        if not any(unit_costs.values()):
            notes = f"{notes} | {PRICE_UNAVAILABLE}" if notes else PRICE_UNAVAILABLE

        priced.append(PricedItem(
            category=scope.category,
            item_name=scope.item_name,
            description=scope.description,
            quantity=scope.quantity,
            unit=scope.unit,
            unit_cost_basic=unit_costs["basic"],
            total_cost_basic=unit_costs["basic"] * scope.quantity,
            unit_cost_standard=unit_costs["standard"],
            total_cost_standard=unit_costs["standard"] * scope.quantity,
            unit_cost_premium=unit_costs["premium"],
            total_cost_premium=unit_costs["premium"] * scope.quantity,
            notes=notes,
        ))

    return RefurbishmentEstimate(items=priced, summary=proposal.summary, error=proposal.error)


# =============================================================================
# Scope models
# =============================================================================

class ScopeModel:
    """Proposes a scope of work from images."""

    def propose(
        self,
        images: Sequence[str],
        catalogue: CostCatalogue,
        request_payload: Dict[str, Any],
    ) -> ScopeProposal:
        raise NotImplementedError


SCOPE_PROMPT = """You are a property refurbishment expert estimating scope from property images.
Rules:
- Only include items that require work based on the images and property condition; omit items in good standard.
- Respect include_items (must add even if unseen) and exclude_items (must omit even if visible).
- User input overrides image analysis.
- Select item_name exactly as listed in the catalogue below.
- Use property_details to guide quantities.
- Keep summary to 300 characters or fewer.
- No contingencies or prices in output.

Return a JSON object with this exact structure:
{
  "items": [{"category": "...", "item_name": "...", "description": "...", "quantity": number, "unit": "...", "notes": "..."}],
  "summary": "...",
  "error": ""
}

Catalogue:
"""


class OpenAIScopeModel(ScopeModel):
    """
    Scope model backed by the OpenAI chat-completions vision API.

    Args:
        client: An openai.OpenAI client (or compatible object)
        model: Vision-capable model name
        max_tokens: Response token limit
    """

    def __init__(self, client, model: str = "gpt-4o", max_tokens: int = 2000):
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    @classmethod
    def from_api_key(cls, api_key: str, model: str = "gpt-4o") -> "OpenAIScopeModel":
        from openai import OpenAI

        return cls(OpenAI(api_key=api_key), model=model)

    def propose(
        self,
        images: Sequence[str],
        catalogue: CostCatalogue,
        request_payload: Dict[str, Any],
    ) -> ScopeProposal:
        prompt = SCOPE_PROMPT + json.dumps(catalogue.listing())
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": prompt},
            {"type": "text", "text": json.dumps(request_payload)},
        ]
        content.extend({"type": "image_url", "image_url": {"url": url}} for url in images)

        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": content}],
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            logger.exception("Refurbishment scope request failed for %d images", len(images))
            raise RefurbishmentEstimateError(f"Failed to estimate refurbishment costs: {e}") from e

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.info("Refurbishment scope usage: %s", usage)

        result_text = response.choices[0].message.content or ""
        try:
            return ScopeProposal.model_validate(json.loads(result_text))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("Unparseable refurbishment response: %s", result_text[:500])
            raise RefurbishmentEstimateError("Refurbishment model returned an invalid response") from e


# =============================================================================
# Estimator
# =============================================================================

class RefurbishmentEstimator:
    """
    Produces priced refurbishment estimates.

    Args:
        model: ScopeModel implementation
        catalogue: Cost catalogue used for pricing
    """

    def __init__(self, model: ScopeModel, catalogue: CostCatalogue):
        self._model = model
        self._catalogue = catalogue

    def estimate(
        self,
        images: Sequence[str],
        items_to_include: Sequence[str] = (),
        items_to_exclude: Sequence[str] = (),
        property_details: Optional[Dict[str, Any]] = None,
    ) -> RefurbishmentEstimate:
        """
        Estimate refurbishment for a property.

        Raises:
            ValueError: If no images are given
            RefurbishmentEstimateError: If the model fails
        """
        if not images:
            raise ValueError("No images provided")

        payload: Dict[str, Any] = {}
        if items_to_include:
            payload["include_items"] = ", ".join(items_to_include)
        if items_to_exclude:
            payload["exclude_items"] = ", ".join(items_to_exclude)
        if property_details:
            payload["property_details"] = property_details

        proposal = self._model.propose(list(images), self._catalogue, payload)
        if len(proposal.summary) > MAX_SUMMARY_CHARS:
            proposal.summary = proposal.summary[:MAX_SUMMARY_CHARS]

        estimate = price_scope(proposal, self._catalogue)
        logger.info(
            "Refurbishment estimate: %d items, standard total %.0f",
            len(estimate.items),
            estimate.total("standard"),
        )
        return estimate
