"""Process-scoped registry of pipeline states with single-writer leases."""
from __future__ import annotations

import copy
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from careflow.config import PipelineStoreConfig
from careflow.core.logger import get_logger
from careflow.core.models import PipelineState


class PipelineBusyError(RuntimeError):
    """Raised when a pipeline id is claimed while another writer holds it."""


class StaleLeaseError(RuntimeError):
    """Raised when publishing through a lease that has already been released."""


class PipelineLease:
    """Exclusive write token for one in-flight pipeline id."""

    def __init__(self, store: PipelineStore, pipeline_id: str) -> None:
        self._store = store
        self._pipeline_id = pipeline_id
        self._active = True

    @property
    def pipeline_id(self) -> str:
        return self._pipeline_id

    @property
    def active(self) -> bool:
        return self._active

    def publish(self, state: PipelineState) -> None:
        """Make ``state`` visible to readers as the latest snapshot."""
        if not self._active:
            raise StaleLeaseError(f"Lease for pipeline '{self._pipeline_id}' has been released")
        if state.pipeline_id != self._pipeline_id:
            raise ValueError(
                f"Lease for pipeline '{self._pipeline_id}' cannot publish '{state.pipeline_id}'"
            )
        self._store._put(state)

    def _release(self) -> None:
        self._active = False


class PipelineStore:
    """Holds the latest snapshot of every recent pipeline run.

    Reads are lock-free deep copies. Writes only happen through a
    :class:`PipelineLease`, and at most one lease exists per pipeline id.
    Entries expire after ``ttl_seconds`` and the oldest finished runs are
    dropped once more than ``max_entries`` are stored.
    """

    def __init__(
        self,
        config: Optional[PipelineStoreConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or PipelineStoreConfig()
        self._clock = clock
        self._states: Dict[str, PipelineState] = {}
        self._stored_at: Dict[str, float] = {}
        self._leased: Set[str] = set()
        self._logger = get_logger("careflow.orchestration.store")

    @asynccontextmanager
    async def claim(self, state: PipelineState) -> AsyncIterator[PipelineLease]:
        """Register ``state`` and hold its write lease for the body of the block."""
        pipeline_id = state.pipeline_id
        if pipeline_id in self._leased:
            raise PipelineBusyError(f"Pipeline '{pipeline_id}' is already being written")

        self._leased.add(pipeline_id)
        self._evict(incoming=pipeline_id)
        self._stored_at[pipeline_id] = self._clock()
        lease = PipelineLease(self, pipeline_id)
        lease.publish(state)
        try:
            yield lease
        finally:
            lease._release()
            self._leased.discard(pipeline_id)

    def get(self, pipeline_id: str) -> Optional[PipelineState]:
        state = self._states.get(pipeline_id)
        return copy.deepcopy(state) if state is not None else None

    def list(self) -> List[PipelineState]:
        """Return every stored state, newest first."""
        states = sorted(self._states.values(), key=lambda state: state.started_at, reverse=True)
        return [copy.deepcopy(state) for state in states]

    def is_leased(self, pipeline_id: str) -> bool:
        return pipeline_id in self._leased

    def __len__(self) -> int:
        return len(self._states)

    def _put(self, state: PipelineState) -> None:
        self._states[state.pipeline_id] = copy.deepcopy(state)

    def _evict(self, incoming: str) -> None:
        now = self._clock()
        expired = [
            pipeline_id
            for pipeline_id, stored_at in self._stored_at.items()
            if now - stored_at > self._config.ttl_seconds and pipeline_id not in self._leased
        ]
        for pipeline_id in expired:
            self._drop(pipeline_id)

        # Insertion order of _stored_at is claim order, so the front holds the oldest runs.
        overflow = len(self._stored_at) + (incoming not in self._stored_at) - self._config.max_entries
        if overflow > 0:
            candidates = [pid for pid in self._stored_at if pid not in self._leased]
            for pipeline_id in candidates[:overflow]:
                self._drop(pipeline_id)

        if expired or overflow > 0:
            self._logger.debug(
                "Evicted pipeline states.",
                extra={"context": {"expired": len(expired), "remaining": len(self._states)}},
            )

    def _drop(self, pipeline_id: str) -> None:
        self._states.pop(pipeline_id, None)
        self._stored_at.pop(pipeline_id, None)
