"""
AI Visual-Similarity Selection for the Comp Engine

Narrows bucketed comparables to the few that look most like the subject
from the street. Buckets are processed strictest first; candidates are sent
to a scorer in small batches, and selection halts as soon as enough
candidates have reached the minimum similarity score.

The selector yields progress events so the web layer can stream them
(server-sent events) or simply wait for the final result.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from pydantic import BaseModel, ValidationError

from core.street_view import optional_street_view_url, street_view_url

from .filters import ComparableBucketer
from .models import BucketingResult, TargetProperty, Transaction


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Constants
# =============================================================================

FINAL_COMPARABLES_COUNT = 3
MIN_SIMILARITY_SCORE = 80.0
CANDIDATES_PER_REQUEST = 5

NO_COMPARABLES_MESSAGE = "No suitable comparables found matching the criteria"
NO_TARGET_LOCATION_MESSAGE = "Target property location data not available for street view"
NO_CANDIDATE_LOCATION_MESSAGE = "No comparables with valid location data for street view"


class SimilarityScoringError(Exception):
    """The scoring backend failed or returned something unusable."""


class SelectionUnavailableError(Exception):
    """
    Selection finished without a usable result.

    These are expected outcomes (no comparables, no imagery, nothing similar
    enough), reported to callers as an unsuccessful result rather than a
    server error.
    """


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class ImageCandidate:
    """A comparable reduced to what the scorer needs."""
    property_id: str
    image_url: str
    address: str = ""


@dataclass
class ImageBucket:
    """Candidates of one relaxation tier that have street-view imagery."""
    index: int
    relaxation_strategy: str
    candidates: List[ImageCandidate]


@dataclass
class SelectionContext:
    """
    Everything one selection run needs, passed explicitly per request.
    """
    target_image_url: str
    buckets: List[ImageBucket]
    total_candidates_considered: int
    min_similarity_score: float = MIN_SIMILARITY_SCORE
    final_count: int = FINAL_COMPARABLES_COUNT
    batch_size: int = CANDIDATES_PER_REQUEST
    size_tolerance_percent: float = 10.0


@dataclass
class SimilarityMatch:
    """A scored candidate."""
    property_id: str
    similarity_score: float
    brief_notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "street_group_property_id": self.property_id,
            "similarity_score": self.similarity_score,
            "brief_notes": self.brief_notes,
        }


@dataclass
class SimilaritySelection:
    """
    Final outcome of a selection run.

    matches are sorted by score descending, all at or above the minimum.
    """
    matches: List[SimilarityMatch]
    buckets_used: List[str]
    candidates_sent: int
    context: SelectionContext

    @property
    def property_ids(self) -> List[str]:
        return [m.property_id for m in self.matches]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "comparables": self.property_ids,
            "similarity_scores": {m.property_id: m.similarity_score for m in self.matches},
            "brief_notes": {m.property_id: m.brief_notes for m in self.matches},
            "context": {
                "total_candidates_considered": self.context.total_candidates_considered,
                "relaxation_strategy": ", ".join(self.buckets_used),
                "buckets_used": list(self.buckets_used),
                "candidates_sent_to_ai": self.candidates_sent,
                "target_comparables_count": self.context.final_count,
                "size_tolerance_percent": self.context.size_tolerance_percent,
                "min_similarity_score": self.context.min_similarity_score,
            },
        }


@dataclass
class SelectionEvent:
    """
    Progress event.

    type is one of: status, bucket, result, error, complete.
    """
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    selection: Optional[SimilaritySelection] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type}
        data.update(self.payload)
        if self.selection is not None:
            data["data"] = self.selection.to_dict()
        return data


def _status(message: str, progress: int) -> SelectionEvent:
    return SelectionEvent("status", {"status": message, "progress": progress})


def _error(message: str) -> SelectionEvent:
    return SelectionEvent("error", {"message": message})


# =============================================================================
# Scorers
# =============================================================================

class SimilarityScorer:
    """
    Scores candidate images against the target image.

    Implementations return a match for each candidate they could assess;
    candidates they skip are simply absent.
    """

    def score(
        self,
        target_image_url: str,
        candidates: Sequence[ImageCandidate],
    ) -> List[SimilarityMatch]:
        raise NotImplementedError


SCORING_PROMPT = """You compare the street-view image of a target property with images of candidate properties.
The first image is the target. Each following image is preceded by its candidate id.

Score each candidate 0-100 on visual similarity, comparing ONLY what is visible:
- Architectural era and style (e.g. Victorian terrace vs modern)
- Subtype (mid-terrace, end-terrace, semi-detached, detached)
- Materials and build form
- Roof type and style
- Garage presence

Be conservative. Required low scores:
- Garage vs no garage: 0-20
- Different subtype: 0-20
- Different brick or cladding materials: 0-30
- Different roof type or style: 0-30
Only score 80 or above when subtype, garage presence, materials, roof and overall style all match.

Return a JSON object with this exact structure:
{
  "comparables": [
    {"street_group_property_id": "<candidate id>", "similarity_score": 0-100, "brief_notes": "key visual matches or mismatches"}
  ]
}
Include every candidate exactly once, using the ids given."""


class _ScoredCandidate(BaseModel):
    street_group_property_id: str
    similarity_score: float
    brief_notes: str = ""


class _ScoringResponse(BaseModel):
    comparables: List[_ScoredCandidate] = []


class OpenAIVisionScorer(SimilarityScorer):
    """
    Scorer backed by the OpenAI chat-completions vision API.

    Args:
        client: An openai.OpenAI client (or compatible object)
        model: Vision-capable model name
        max_tokens: Response token limit
    """

    def __init__(self, client, model: str = "gpt-4o", max_tokens: int = 1500):
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    @classmethod
    def from_api_key(cls, api_key: str, model: str = "gpt-4o") -> "OpenAIVisionScorer":
        from openai import OpenAI

        return cls(OpenAI(api_key=api_key), model=model)

    def score(
        self,
        target_image_url: str,
        candidates: Sequence[ImageCandidate],
    ) -> List[SimilarityMatch]:
        if not candidates:
            return []

        content: List[Dict[str, Any]] = [
            {"type": "text", "text": SCORING_PROMPT},
            {"type": "text", "text": "Target property:"},
            {"type": "image_url", "image_url": {"url": target_image_url}},
        ]
        for candidate in candidates:
            label = f"Candidate id={candidate.property_id}"
            if candidate.address:
                label += f" ({candidate.address})"
            content.append({"type": "text", "text": label})
            content.append({"type": "image_url", "image_url": {"url": candidate.image_url}})

        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": content}],
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            logger.exception("Similarity scoring request failed for %d candidates", len(candidates))
            raise SimilarityScoringError(f"Similarity scoring failed: {e}") from e

        result_text = response.choices[0].message.content or ""
        try:
            parsed = _ScoringResponse.model_validate(json.loads(result_text))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("Unparseable similarity response: %s", result_text[:500])
            raise SimilarityScoringError("Similarity scorer returned an invalid response") from e

        return [
            SimilarityMatch(
                property_id=item.street_group_property_id,
                similarity_score=item.similarity_score,
                brief_notes=item.brief_notes,
            )
            for item in parsed.comparables
        ]


# =============================================================================
# Selection
# =============================================================================

def build_selection_context(
    bucketing: BucketingResult,
    target: TargetProperty,
    google_maps_api_key: str,
    min_similarity_score: float = MIN_SIMILARITY_SCORE,
    final_count: int = FINAL_COMPARABLES_COUNT,
    batch_size: int = CANDIDATES_PER_REQUEST,
    size_tolerance_percent: float = 10.0,
) -> SelectionContext:
    """
    Attach street-view imagery to bucketed comparables.

    Candidates without coordinates are dropped, and so are buckets left
    empty by that.

    Raises:
        SelectionUnavailableError: If the target or every candidate lacks a location
    """
    target_url = optional_street_view_url(target.latitude, target.longitude, google_maps_api_key)
    if target_url is None:
        raise SelectionUnavailableError(NO_TARGET_LOCATION_MESSAGE)

    buckets = []
    for index, bucket in enumerate(bucketing.buckets):
        candidates = [
            ImageCandidate(
                property_id=t.property_id,
                image_url=street_view_url(t.latitude, t.longitude, google_maps_api_key),
                address=t.address or "Address not available",
            )
            for t in bucket.comparables
            if t.has_location
        ]
        if candidates:
            buckets.append(ImageBucket(index, bucket.relaxation_strategy, candidates))

    if not buckets:
        raise SelectionUnavailableError(NO_CANDIDATE_LOCATION_MESSAGE)

    return SelectionContext(
        target_image_url=target_url,
        buckets=buckets,
        total_candidates_considered=bucketing.total_candidates_considered,
        min_similarity_score=min_similarity_score,
        final_count=final_count,
        batch_size=batch_size,
        size_tolerance_percent=size_tolerance_percent,
    )


def _chunks(items: Sequence[ImageCandidate], size: int) -> Iterator[List[ImageCandidate]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class VisualSimilaritySelector:
    """
    Runs bucketing plus visual-similarity selection.

    Args:
        scorer: SimilarityScorer implementation
        scorer_factory: Builds the scorer on first use when no scorer is given
        bucketer: ComparableBucketer (carries reference date and tolerances)
        google_maps_api_key: Key for street-view image URLs
        min_similarity_score: Minimum score for a candidate to be kept
        final_count: Number of comparables to return
        batch_size: Candidates per scorer request
    """

    def __init__(
        self,
        scorer: Optional[SimilarityScorer],
        bucketer: ComparableBucketer,
        google_maps_api_key: str,
        min_similarity_score: float = MIN_SIMILARITY_SCORE,
        final_count: int = FINAL_COMPARABLES_COUNT,
        batch_size: int = CANDIDATES_PER_REQUEST,
        size_tolerance_percent: float = 10.0,
        scorer_factory: Optional[Callable[[], SimilarityScorer]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if scorer is None and scorer_factory is None:
            raise ValueError("A scorer or scorer_factory is required")
        self._scorer = scorer
        self._scorer_factory = scorer_factory
        self._bucketer = bucketer
        self._api_key = google_maps_api_key
        self._min_score = min_similarity_score
        self._final_count = final_count
        self._batch_size = batch_size
        self._size_tolerance = size_tolerance_percent

    def _get_scorer(self) -> SimilarityScorer:
        """
        Scorer, built on first use.

        Raises:
            SimilarityScoringError: If the factory cannot build a scorer
        """
        if self._scorer is None:
            self._scorer = self._scorer_factory()
        return self._scorer

    def iter_events(
        self,
        transactions: Iterable[Transaction],
        target: TargetProperty,
        target_street: str,
    ) -> Iterator[SelectionEvent]:
        """
        Bucket, attach imagery and score, yielding progress events.

        Ends with either a ``result`` and a ``complete`` event, or a single
        ``error`` event for an expected unsuccessful outcome.

        Raises:
            SimilarityScoringError: If the scorer fails
        """
        transactions = list(transactions)
        yield _status(f"Analysing {len(transactions)} transactions nearby", 10)

        bucketing = self._bucketer.create_buckets(transactions, target, target_street)
        yield _status(
            f"Created {len(bucketing.buckets)} buckets with "
            f"{bucketing.total_candidates_considered} matching properties",
            25,
        )

        if not bucketing.found_comparables:
            logger.warning(
                "No comparables for %s (type=%s beds=%s baths=%s area=%s, %d transactions)",
                target.address or "target",
                target.property_type,
                target.bedrooms,
                target.bathrooms,
                target.internal_area_sqm,
                len(transactions),
            )
            yield _error(NO_COMPARABLES_MESSAGE)
            return

        yield _status("Preparing property images for comparison", 35)
        try:
            context = build_selection_context(
                bucketing,
                target,
                self._api_key,
                min_similarity_score=self._min_score,
                final_count=self._final_count,
                batch_size=self._batch_size,
                size_tolerance_percent=self._size_tolerance,
            )
        except SelectionUnavailableError as e:
            yield _error(str(e))
            return

        yield _status("Identifying similarities from pictures", 50)
        yield from self.iter_scoring(context)

    def iter_scoring(self, context: SelectionContext) -> Iterator[SelectionEvent]:
        """
        Score buckets strictest first, halting once enough matches qualify.

        A property already scored in an earlier bucket is not sent again.
        """
        qualifying: Dict[str, SimilarityMatch] = {}
        match_bucket: Dict[str, str] = {}
        scored_ids = set()
        candidates_sent = 0
        total_buckets = len(context.buckets)

        for position, bucket in enumerate(context.buckets):
            if len(qualifying) >= context.final_count:
                break

            progress = 50 + int(40 * position / total_buckets)
            yield SelectionEvent("bucket", {
                "bucket_index": bucket.index,
                "relaxation_strategy": bucket.relaxation_strategy,
                "candidates": len(bucket.candidates),
                "progress": progress,
            })

            pending = [c for c in bucket.candidates if c.property_id not in scored_ids]
            for batch in _chunks(pending, context.batch_size):
                batch_ids = {c.property_id for c in batch}
                scored_ids.update(batch_ids)
                candidates_sent += len(batch)

                for match in self._get_scorer().score(context.target_image_url, batch):
                    if match.property_id not in batch_ids:
                        logger.warning("Scorer returned unknown candidate %s", match.property_id)
                        continue
                    score = float(match.similarity_score)
                    if not math.isfinite(score):
                        logger.warning("Scorer returned non-numeric score for %s", match.property_id)
                        continue
                    match.similarity_score = max(0.0, min(100.0, score))
                    if match.similarity_score < context.min_similarity_score:
                        continue
                    existing = qualifying.get(match.property_id)
                    if existing is None or match.similarity_score > existing.similarity_score:
                        qualifying[match.property_id] = match
                        match_bucket[match.property_id] = bucket.relaxation_strategy

                logger.info(
                    "Bucket %d (%s): %d candidates scored, %d qualifying so far",
                    bucket.index,
                    bucket.relaxation_strategy,
                    len(batch),
                    len(qualifying),
                )
                if len(qualifying) >= context.final_count:
                    break

        if not qualifying:
            yield _error(
                f"No comparables found with >={context.min_similarity_score:g}% similarity"
            )
            return

        matches = sorted(
            qualifying.values(),
            key=lambda m: m.similarity_score,
            reverse=True,
        )[: context.final_count]

        buckets_used: List[str] = []
        for match in matches:
            strategy = match_bucket[match.property_id]
            if strategy not in buckets_used:
                buckets_used.append(strategy)

        yield _status("Finalizing results", 95)
        selection = SimilaritySelection(
            matches=matches,
            buckets_used=buckets_used,
            candidates_sent=candidates_sent,
            context=context,
        )
        yield SelectionEvent("result", selection=selection)
        yield SelectionEvent("complete", {"progress": 100})

    def select(
        self,
        transactions: Iterable[Transaction],
        target: TargetProperty,
        target_street: str,
    ) -> SimilaritySelection:
        """
        Run selection to completion.

        Raises:
            SelectionUnavailableError: For an expected unsuccessful outcome
            SimilarityScoringError: If the scorer fails
        """
        for event in self.iter_events(transactions, target, target_street):
            if event.type == "error":
                raise SelectionUnavailableError(event.payload["message"])
            if event.type == "result":
                return event.selection
        raise SelectionUnavailableError(NO_COMPARABLES_MESSAGE)
