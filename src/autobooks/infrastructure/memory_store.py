"""Multi-tier agent memory.

Holds four kinds of memory shared by the agents of a process:

- short-term: small bounded scratchpad (current tasks, intermediate data)
- long-term: key/value entries with optional TTL, searchable
- episodic: append-only event log, bounded by count and age
- semantic: confidence-weighted (subject, predicate, object) triples

A pattern cache is derived from successful ``task_execution`` events and is
used to suggest approaches for new tasks.

All operations are synchronous and never await mid-mutation, so they are safe
to call from any coroutine on the event loop. Lookups of missing keys return
``None`` or empty lists instead of raising.
"""

import asyncio
import contextlib
import json
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from autobooks.config import Settings, get_settings
from autobooks.core.models import (
    AgentEvent,
    ApproachSuggestion,
    EventFilter,
    EventOutcome,
    KnowledgeTriple,
    Pattern,
    QueryPattern,
    Task,
    TaskResult,
    clamp_confidence,
    utcnow,
)

logger = structlog.get_logger()

APPROACH_RETENTION_SECONDS = 7 * 86400
RELATED_PATTERN_TTL_SECONDS = 86400
RELATION_BOOST = 0.1
RELATED_PATTERN_BOOST = 0.05
SUCCESS_BOOST = 0.1
FAILURE_PENALTY = 0.2
SUGGESTION_THRESHOLD = 0.6
LOW_CONFIDENCE = 0.2


@dataclass
class _Entry:
    value: Any
    expires_at: datetime | None = None


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump()
    if isinstance(obj, bytes | bytearray):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


def serialize(value: Any) -> str:
    """Serialize a value for text matching.

    Never raises: values JSON cannot represent (binary payloads, non-string
    keys, cycles) degrade to their ``repr``.
    """
    try:
        return json.dumps(value, default=_json_default)
    except (TypeError, ValueError):
        return repr(value)


def encode_approach(approach: Any) -> str:
    """Canonical text form of an approach (strings are kept as-is)."""
    if isinstance(approach, str):
        return approach
    try:
        return json.dumps(approach, sort_keys=True, default=_json_default)
    except (TypeError, ValueError):
        return repr(approach)


def decode_approach(text: str) -> Any:
    """Inverse of :func:`encode_approach`; non-JSON text is returned unchanged."""
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


class MemoryStore:
    """In-process multi-tier memory store."""

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize memory store.

        Args:
            settings: Settings instance (uses global if None)
            clock: Returns the current aware datetime (defaults to UTC now)
        """
        self.settings = settings or get_settings()
        self._clock = clock or utcnow

        self._short_term: OrderedDict[str, Any] = OrderedDict()
        self._long_term: dict[str, _Entry] = {}
        self._events: deque[AgentEvent] = deque(maxlen=self.settings.event_capacity)
        self._triples: list[KnowledgeTriple] = []
        self._patterns: dict[str, deque[Pattern]] = {}

        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Short-term memory
    # ------------------------------------------------------------------

    def stash(self, key: str, value: Any) -> None:
        """Put a value in short-term memory, dropping the oldest entry when full."""
        self._short_term[key] = value
        self._short_term.move_to_end(key)
        while len(self._short_term) > self.settings.short_term_size:
            self._short_term.popitem(last=False)

    def peek(self, key: str) -> Any:
        """Read a short-term value (None if absent)."""
        return self._short_term.get(key)

    def discard(self, key: str) -> None:
        self._short_term.pop(key, None)

    # ------------------------------------------------------------------
    # Long-term memory
    # ------------------------------------------------------------------

    def _is_expired(self, entry: _Entry, now: datetime) -> bool:
        return entry.expires_at is not None and entry.expires_at < now

    def remember(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a long-term entry.

        Args:
            key: Entry key
            value: Any value (pydantic models are stored as-is)
            ttl: Seconds until the entry expires (None keeps it forever)
        """
        expires_at = self._clock() + timedelta(seconds=ttl) if ttl is not None else None
        self._long_term[key] = _Entry(value=value, expires_at=expires_at)

    def recall(self, key: str) -> Any:
        """Read a long-term entry.

        Expired entries are removed on read and reported as absent.

        Returns:
            Stored value, or None if missing or expired
        """
        entry = self._long_term.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._long_term[key]
            logger.debug("memory_entry_expired", key=key)
            return None
        return entry.value

    def forget(self, key: str) -> bool:
        """Remove a long-term entry. Returns whether it existed."""
        return self._long_term.pop(key, None) is not None

    def search(self, query: str, limit: int = 10) -> list[Any]:
        """Naive relevance search over long-term entries.

        An entry matches when the query appears (case-insensitively) in its
        key or serialized value. Each whitespace-separated query term scores
        2 when present in the key and 1 when present in the value. Ties are
        ordered newest first.

        Args:
            query: Search text
            limit: Maximum number of values returned

        Returns:
            Matching values, most relevant first
        """
        needle = query.lower().strip()
        if not needle or limit <= 0:
            return []
        terms = needle.split()
        now = self._clock()

        hits: list[tuple[int, Any]] = []
        for key, entry in reversed(list(self._long_term.items())):
            if self._is_expired(entry, now):
                del self._long_term[key]
                continue
            key_text = key.lower()
            value_text = serialize(entry.value).lower()
            if needle not in key_text and needle not in value_text:
                continue
            score = sum(
                2 * (term in key_text) + (term in value_text) for term in terms
            )
            hits.append((score, entry.value))

        hits.sort(key=lambda hit: hit[0], reverse=True)
        return [value for _, value in hits[:limit]]

    # ------------------------------------------------------------------
    # Episodic memory
    # ------------------------------------------------------------------

    def store_event(self, event: AgentEvent) -> None:
        """Append an event, evicting the oldest past capacity."""
        if len(self._events) == self._events.maxlen:
            evicted = self._events[0]
            logger.debug("memory_event_evicted", event_id=evicted.id)
        self._events.append(event)
        self._update_pattern_cache(event)

    def recall_events(self, event_filter: EventFilter | None = None) -> list[AgentEvent]:
        """Events matching the filter, newest first.

        Events older than the retention window are never returned, whether or
        not a sweep has removed them yet.
        """
        event_filter = event_filter or EventFilter()
        cutoff = self._clock() - timedelta(days=self.settings.event_retention_days)
        events = [e for e in self._events if e.timestamp > cutoff and event_filter.matches(e)]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events

    # ------------------------------------------------------------------
    # Semantic memory
    # ------------------------------------------------------------------

    def add_relation(self, subject: str, predicate: str, obj: str) -> KnowledgeTriple:
        """Insert a triple, or reinforce it if it already exists.

        Returns:
            The stored triple
        """
        now = self._clock()
        triple = next(
            (
                t
                for t in self._triples
                if t.subject == subject and t.predicate == predicate and t.object == obj
            ),
            None,
        )
        if triple is not None:
            triple.confidence = clamp_confidence(triple.confidence + RELATION_BOOST)
            triple.timestamp = now
        else:
            triple = KnowledgeTriple(
                subject=subject, predicate=predicate, object=obj, timestamp=now
            )
            self._triples.append(triple)

        self._boost_related_patterns(subject, predicate)
        return triple

    def query(self, pattern: QueryPattern | None = None) -> list[KnowledgeTriple]:
        """Triples matching the pattern, most confident first."""
        pattern = pattern or QueryPattern()
        triples = [t for t in self._triples if pattern.matches(t)]
        triples.sort(key=lambda t: t.confidence, reverse=True)
        return triples

    # ------------------------------------------------------------------
    # Pattern cache
    # ------------------------------------------------------------------

    def patterns_for(self, task_type: str) -> list[Pattern]:
        """Cached patterns of a task type, oldest first."""
        return list(self._patterns.get(task_type, ()))

    def _update_pattern_cache(self, event: AgentEvent) -> None:
        if event.type != "task_execution" or event.outcome != EventOutcome.SUCCESS:
            return
        pattern = self._extract_pattern(event)
        if pattern is None:
            return
        cache = self._patterns.setdefault(
            pattern.task_type, deque(maxlen=self.settings.pattern_cache_size)
        )
        cache.append(pattern)

    def _extract_pattern(self, event: AgentEvent) -> Pattern | None:
        if not isinstance(event.data, dict):
            return None
        task = event.data.get("task")
        result = event.data.get("result")
        if task is None or result is None:
            return None
        try:
            task = task if isinstance(task, Task) else Task.model_validate(task)
            result = result if isinstance(result, TaskResult) else TaskResult.model_validate(result)
        except ValidationError as e:
            logger.debug("pattern_extraction_skipped", event_id=event.id, error=str(e))
            return None
        return Pattern(
            task_type=task.type,
            tools_used=list(result.tools_used),
            execution_time=result.execution_time,
            confidence=result.confidence if result.confidence is not None else 0.5,
            timestamp=event.timestamp,
        )

    def _boost_related_patterns(self, subject: str, predicate: str) -> None:
        related = [
            pattern
            for task_type, patterns in self._patterns.items()
            if subject in task_type
            for pattern in patterns
        ]
        if not related:
            return
        for pattern in related:
            pattern.confidence = clamp_confidence(pattern.confidence + RELATED_PATTERN_BOOST)
        strongest = max(related, key=lambda p: p.confidence)
        self.remember(
            f"pattern_{subject}_{predicate}",
            strongest.model_copy(),
            ttl=RELATED_PATTERN_TTL_SECONDS,
        )

    # ------------------------------------------------------------------
    # Learning helpers
    # ------------------------------------------------------------------

    def _adjust_matching_patterns(self, task_type: str, approach: Any, delta: float) -> int:
        signature = encode_approach(approach)
        adjusted = 0
        for pattern in self._patterns.get(task_type, ()):
            if encode_approach(pattern.approach) == signature:
                pattern.confidence = clamp_confidence(pattern.confidence + delta)
                adjusted += 1
        return adjusted

    def learn_from_success(self, task_type: str, approach: Any) -> None:
        """Record an approach that worked and reinforce matching patterns."""
        self.remember(
            f"success_{task_type}_{uuid.uuid4().hex[:12]}",
            approach,
            ttl=APPROACH_RETENTION_SECONDS,
        )
        self.add_relation(task_type, "solved_by", encode_approach(approach))
        adjusted = self._adjust_matching_patterns(task_type, approach, SUCCESS_BOOST)
        logger.debug("learned_from_success", task_type=task_type, patterns_adjusted=adjusted)

    def learn_from_failure(self, task_type: str, approach: Any, error: BaseException | str) -> None:
        """Record an approach that failed and weaken matching patterns."""
        message = str(error)
        self.remember(
            f"failure_{task_type}_{uuid.uuid4().hex[:12]}",
            {"approach": approach, "error": message},
            ttl=APPROACH_RETENTION_SECONDS,
        )
        self.add_relation(task_type, "fails_with", message)
        adjusted = self._adjust_matching_patterns(task_type, approach, -FAILURE_PENALTY)
        logger.debug("learned_from_failure", task_type=task_type, patterns_adjusted=adjusted)

    def suggest_approach(self, task_type: str) -> list[ApproachSuggestion]:
        """Suggest approaches for a task type.

        Returns up to three cached patterns above the confidence threshold,
        followed by up to two ``solved_by`` relations.
        """
        confident = sorted(
            (p for p in self.patterns_for(task_type) if p.confidence > SUGGESTION_THRESHOLD),
            key=lambda p: p.confidence,
            reverse=True,
        )
        suggestions = [
            ApproachSuggestion(
                source="pattern", approach=p.approach, confidence=p.confidence, pattern=p
            )
            for p in confident[:3]
        ]

        relations = self.query(QueryPattern(subject=task_type, predicate="solved_by"))
        for triple in relations[:2]:
            suggestions.append(
                ApproachSuggestion(
                    source="semantic",
                    approach=decode_approach(triple.object),
                    confidence=triple.confidence,
                )
            )
        return suggestions

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> dict[str, int]:
        """Drop expired entries, old events and stale low-confidence triples.

        Returns:
            Number of removed items per tier
        """
        now = self._clock()
        cutoff = now - timedelta(days=self.settings.event_retention_days)

        expired_keys = [k for k, e in self._long_term.items() if self._is_expired(e, now)]
        for key in expired_keys:
            del self._long_term[key]

        events_before = len(self._events)
        kept = [e for e in self._events if e.timestamp > cutoff]
        self._events = deque(kept, maxlen=self.settings.event_capacity)

        triples_before = len(self._triples)
        self._triples = [
            t for t in self._triples if t.confidence > LOW_CONFIDENCE or t.timestamp > cutoff
        ]

        removed = {
            "long_term": len(expired_keys),
            "events": events_before - len(self._events),
            "relations": triples_before - len(self._triples),
        }
        logger.info("memory_swept", **removed)
        return removed

    async def _sweep_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error("memory_sweep_failed", error=str(e))

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_periodically())
            logger.info("memory_sweeper_started", interval=self.settings.sweep_interval_seconds)

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None
        logger.info("memory_sweeper_stopped")

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Sizes of each memory tier."""
        return {
            "short_term_size": len(self._short_term),
            "long_term_size": len(self._long_term),
            "episodic_events": len(self._events),
            "semantic_relations": len(self._triples),
            "pattern_types": len(self._patterns),
            "oldest_event": self._events[0].timestamp if self._events else None,
            "newest_event": self._events[-1].timestamp if self._events else None,
        }

    def analyze_patterns(self, task_type: str | None = None) -> dict[str, list]:
        """Summarize cached patterns.

        Args:
            task_type: Analyze one task type; all types when None

        Returns:
            Dict with ``patterns``, ``insights`` and ``recommendations`` lists
        """
        analysis: dict[str, list] = {"patterns": [], "insights": [], "recommendations": []}

        if task_type is not None:
            patterns = self.patterns_for(task_type)
            if patterns:
                avg_time = sum(p.execution_time for p in patterns) / len(patterns)
                avg_confidence = sum(p.confidence for p in patterns) / len(patterns)
                analysis["patterns"] = patterns
                analysis["insights"].append(f"Average execution time: {avg_time:.3f}s")
                analysis["insights"].append(f"Average confidence: {avg_confidence * 100:.1f}%")
                if avg_confidence < SUGGESTION_THRESHOLD:
                    analysis["recommendations"].append(
                        "Consider reviewing and optimizing this task type"
                    )
            return analysis

        for name, patterns in self._patterns.items():
            if len(patterns) > 5:
                analysis["patterns"].append(
                    {
                        "type": name,
                        "count": len(patterns),
                        "avg_confidence": sum(p.confidence for p in patterns) / len(patterns),
                    }
                )
        analysis["insights"].append(f"Tracking {len(self._patterns)} pattern types")
        analysis["insights"].append(f"{len(self._events)} events in episodic memory")
        return analysis
