"""TTL cache for criterion sets keyed by schema id, driven by an injected clock."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from insight_orchestrator.evaluation_plane.criteria import EvaluationCriterion

DEFAULT_TTL_SECONDS = 300.0

Clock = Callable[[], float]
CriteriaLoader = Callable[[str], Awaitable[Sequence[EvaluationCriterion]]]


@dataclass(frozen=True, slots=True)
class _Entry:
    criteria: tuple[EvaluationCriterion, ...]
    expires_at: float


class CriteriaCache:
    """Criterion sets per schema id; entries expire ``ttl_seconds`` after insertion."""

    __slots__ = ("_ttl", "_clock", "_entries")

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, *, clock: Clock = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, schema_id: str) -> tuple[EvaluationCriterion, ...] | None:
        entry = self._entries.get(schema_id)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[schema_id]
            return None
        return entry.criteria

    def put(
        self, schema_id: str, criteria: Sequence[EvaluationCriterion]
    ) -> tuple[EvaluationCriterion, ...]:
        frozen = tuple(criteria)
        self._entries[schema_id] = _Entry(criteria=frozen, expires_at=self._clock() + self._ttl)
        return frozen

    def invalidate(self, schema_id: str | None = None) -> None:
        """Drop one schema's entry, or every entry when ``schema_id`` is None."""
        if schema_id is None:
            self._entries.clear()
        else:
            self._entries.pop(schema_id, None)

    async def get_or_load(
        self, schema_id: str, loader: CriteriaLoader
    ) -> tuple[EvaluationCriterion, ...]:
        cached = self.get(schema_id)
        if cached is not None:
            return cached
        return self.put(schema_id, await loader(schema_id))


__all__ = ["DEFAULT_TTL_SECONDS", "CriteriaCache"]
