"""Classify-and-query pipeline.

Sequence for one captured photo:

    Idle -> Classifying -> QueryBuilding -> Fetching -> Completed
                 \\              \\              \\
                  +--------------+--------------+--> Failed(kind)

Stages run strictly in order; nothing is retried. Within a session only
the most recently issued run may deliver a result, so a slow run for an
older photo can never overwrite the answer for a newer one.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from catalogsnap.catalog.query import CatalogQueryBuilder
from catalogsnap.errors import FetchError, NoMatchError, PipelineError, SupersededError

if TYPE_CHECKING:
    from collections.abc import Callable

    from catalogsnap.catalog.client import CatalogClient, CatalogRecord
    from catalogsnap.catalog.query import CatalogQuery
    from catalogsnap.ml.image_classifier import Classification, ImageClassifier, ImageSample
    from catalogsnap.ml.inference import InferencePool

logger = logging.getLogger(__name__)


class PipelineState(StrEnum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    QUERY_BUILDING = "query_building"
    FETCHING = "fetching"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a completed run."""

    request_id: int
    category: str
    classifications: tuple[Classification, ...]
    query: CatalogQuery
    records: tuple[CatalogRecord, ...]
    image_urls: tuple[str, ...]
    state: PipelineState = PipelineState.COMPLETED


class ClassificationPipeline:
    """Turns a captured product photo into matching catalog records."""

    def __init__(
        self,
        classifier: ImageClassifier,
        catalog_client: CatalogClient,
        inference_pool: InferencePool,
        *,
        query_builder: CatalogQueryBuilder | None = None,
        top_k: int = 2,
        min_confidence: float = 0.0,
        on_transition: Callable[[int, PipelineState], None] | None = None,
    ) -> None:
        self._classifier = classifier
        self._catalog_client = catalog_client
        self._inference_pool = inference_pool
        self._query_builder = query_builder or CatalogQueryBuilder()
        self._top_k = top_k
        self._min_confidence = min_confidence
        self._on_transition = on_transition

        self._ids = itertools.count(1)
        self._latest: dict[str, int] = {}
        self._latest_lock = threading.Lock()

    async def run(self, sample: ImageSample, *, session: str | None = None) -> PipelineResult:
        """Classify ``sample`` and fetch the catalog records for its top category.

        Args:
            sample: The captured photo.
            session: Caller key whose runs supersede each other. ``None``
                runs are never superseded.

        Raises:
            DecodeError, InferenceError, NoMatchError, FetchError: The run failed.
            SupersededError: A newer run was started for the same session.
            TimeoutError: The inference pool had no free slot.
        """
        request_id = self._issue(session)
        self._transition(request_id, PipelineState.IDLE)
        state = PipelineState.IDLE

        try:
            state = PipelineState.CLASSIFYING
            self._transition(request_id, state)
            ranked = await self._inference_pool.run(self._classifier.classify, sample)
            if not ranked:
                raise NoMatchError("Classifier returned no results", stage=state)
            if ranked[0].confidence < self._min_confidence:
                raise NoMatchError(
                    f"Top label {ranked[0].label!r} scored {ranked[0].confidence:.3f}, "
                    f"below minimum {self._min_confidence:.3f}",
                    stage=state,
                )
            self._check_current(request_id, session, state)

            state = PipelineState.QUERY_BUILDING
            self._transition(request_id, state)
            query = self._query_builder.build(ranked)

            state = PipelineState.FETCHING
            self._transition(request_id, state)
            try:
                records = await self._catalog_client.fetch(query)
            except Exception as exc:
                raise FetchError(f"Catalog fetch failed for {query}: {exc}", stage=state, cause=exc) from exc
            self._check_current(request_id, session, state)
        except PipelineError as exc:
            if exc.stage is None:
                exc.stage = state
            self._transition(request_id, PipelineState.FAILED)
            if not isinstance(exc, SupersededError) and self._is_stale(request_id, session):
                # A stale run reports being superseded, not its own failure.
                logger.info("Run %d failed after being superseded: %s", request_id, exc)
                raise SupersededError(f"Run {request_id} superseded", stage=exc.stage, cause=exc) from exc
            logger.warning("Run %d failed (%s): %s", request_id, exc.kind, exc)
            raise
        finally:
            self._release(request_id, session)

        self._transition(request_id, PipelineState.COMPLETED)
        logger.info("Run %d completed: %s -> %d records", request_id, query.category, len(records))
        return PipelineResult(
            request_id=request_id,
            category=query.category,
            classifications=tuple(ranked[: self._top_k]),
            query=query,
            records=tuple(records),
            image_urls=tuple(record.image_url or "" for record in records),
        )

    def latest_request_id(self, session: str) -> int | None:
        """Return the id of the newest in-flight run for ``session``."""
        with self._latest_lock:
            return self._latest.get(session)

    # -- Internal -----------------------------------------------------------

    def _issue(self, session: str | None) -> int:
        with self._latest_lock:
            request_id = next(self._ids)
            if session is not None:
                self._latest[session] = request_id
        return request_id

    def _is_stale(self, request_id: int, session: str | None) -> bool:
        if session is None:
            return False
        with self._latest_lock:
            return self._latest.get(session) != request_id

    def _check_current(self, request_id: int, session: str | None, state: PipelineState) -> None:
        if self._is_stale(request_id, session):
            raise SupersededError(f"Run {request_id} superseded in session {session!r}", stage=state)

    def _release(self, request_id: int, session: str | None) -> None:
        # Only the newest run clears the session; older ones leave it alone.
        if session is None:
            return
        with self._latest_lock:
            if self._latest.get(session) == request_id:
                del self._latest[session]

    def _transition(self, request_id: int, state: PipelineState) -> None:
        logger.debug("Run %d -> %s", request_id, state)
        if self._on_transition is not None:
            self._on_transition(request_id, state)
