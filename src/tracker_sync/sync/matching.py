"""Pure matching tiers mapping a local status onto external workflow states.

Each tier takes ``(status, candidates, snapshot)`` and returns a ``StateMatch``
or ``None``. The resolver tries them in order and stops at the first match, so
every tier can be unit-tested in isolation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from tracker_sync.models import MatchType, StateMatch, TaskStatus, WorkflowState
from tracker_sync.sync.state_cache import StateSnapshot, normalize_name

logger = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.5
SUBSTRING_SCORE = 0.8
WORD_OVERLAP_WEIGHT = 0.6
SYNONYM_SCORE = 0.7

STATUS_DEFAULT_NAMES: dict[TaskStatus, tuple[str, ...]] = {
    TaskStatus.PENDING: ("Todo", "Backlog"),
    TaskStatus.IN_PROGRESS: ("In Progress",),
    TaskStatus.REVIEW: ("In Review",),
    TaskStatus.DONE: ("Done", "Completed"),
    TaskStatus.CANCELLED: ("Canceled", "Cancelled"),
    TaskStatus.DEFERRED: ("Backlog", "On Hold"),
}

STATUS_STATE_TYPES: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "unstarted",
    TaskStatus.IN_PROGRESS: "started",
    TaskStatus.REVIEW: "started",
    TaskStatus.DONE: "completed",
    TaskStatus.CANCELLED: "canceled",
    TaskStatus.DEFERRED: "unstarted",
}

FUZZY_SYNONYMS: dict[str, tuple[str, ...]] = {
    "todo": ("todo", "to do", "backlog", "new"),
    "progress": ("in progress", "active", "working", "started"),
    "review": ("in review", "review", "pending review"),
    "done": ("done", "completed", "finished", "closed"),
    "cancelled": ("cancelled", "canceled", "rejected"),
}

SEMANTIC_VOCABULARY: dict[TaskStatus, tuple[str, ...]] = {
    TaskStatus.PENDING: (
        "todo",
        "to do",
        "backlog",
        "new",
        "created",
        "open",
        "queued",
        "waiting",
        "scheduled",
        "planned",
        "ready",
        "triage",
        "incoming",
    ),
    TaskStatus.IN_PROGRESS: (
        "in progress",
        "progress",
        "active",
        "working",
        "started",
        "doing",
        "development",
        "implementing",
        "building",
        "coding",
        "wip",
        "current",
    ),
    TaskStatus.REVIEW: (
        "in review",
        "review",
        "pending review",
        "reviewing",
        "testing",
        "qa",
        "quality assurance",
        "validation",
        "approval",
        "checking",
    ),
    TaskStatus.DONE: (
        "done",
        "completed",
        "finished",
        "closed",
        "resolved",
        "complete",
        "shipped",
        "delivered",
        "deployed",
        "released",
        "success",
    ),
    TaskStatus.CANCELLED: (
        "cancelled",
        "canceled",
        "rejected",
        "declined",
        "abandoned",
        "discarded",
        "aborted",
        "dropped",
        "void",
        "invalid",
    ),
    TaskStatus.DEFERRED: (
        "backlog",
        "on hold",
        "deferred",
        "postponed",
        "paused",
        "suspended",
        "later",
        "future",
        "someday",
        "icebox",
        "parked",
    ),
}

TierFn = Callable[[TaskStatus, tuple[str, ...], StateSnapshot], StateMatch | None]


@dataclass(slots=True, frozen=True)
class MatchTier:
    """One named step of the resolution chain."""

    name: str
    match: TierFn
    fuzzy: bool = False
    fallback: bool = False


def fuzzy_score(target: str, state_name: str) -> float:
    """Similarity of a free-text target to a state name."""

    target = target.lower()
    name = state_name.lower()
    score = 0.0
    if target in name or name in target:
        score += SUBSTRING_SCORE

    target_words = target.split()
    state_words = name.split()
    if target_words and state_words:
        matching = [
            word
            for word in target_words
            if any(word in state_word or state_word in word for state_word in state_words)
        ]
        score += len(matching) / max(len(target_words), len(state_words)) * WORD_OVERLAP_WEIGHT

    for key, variations in FUZZY_SYNONYMS.items():
        if key in target and any(variation in name for variation in variations):
            score += SYNONYM_SCORE
    return score


def best_fuzzy_match(
    states: Iterable[WorkflowState],
    target: str,
    *,
    threshold: float = FUZZY_THRESHOLD,
) -> tuple[WorkflowState, float] | None:
    """Highest-scoring state above ``threshold``; ties keep the first one seen."""

    if not target:
        return None
    best: tuple[WorkflowState, float] | None = None
    for state in states:
        score = fuzzy_score(target, state.name)
        if score > threshold and (best is None or score > best[1]):
            best = (state, score)
    return best


def match_exact(
    _status: TaskStatus,
    candidates: tuple[str, ...],
    snapshot: StateSnapshot,
) -> StateMatch | None:
    for candidate in candidates:
        state = snapshot.state_by_name.get(candidate)
        if state is not None:
            return StateMatch(state=state, match_type=MatchType.EXACT, confidence=1.0)
    return None


def match_case_insensitive(
    _status: TaskStatus,
    candidates: tuple[str, ...],
    snapshot: StateSnapshot,
) -> StateMatch | None:
    for candidate in candidates:
        state = snapshot.state_by_lower_name.get(candidate.lower())
        if state is not None:
            return StateMatch(state=state, match_type=MatchType.CASE_INSENSITIVE, confidence=0.95)
    return None


def match_fuzzy(
    _status: TaskStatus,
    candidates: tuple[str, ...],
    snapshot: StateSnapshot,
) -> StateMatch | None:
    for candidate in candidates:
        state = snapshot.state_by_normalized_name.get(normalize_name(candidate))
        if state is not None:
            return StateMatch(state=state, match_type=MatchType.NORMALIZED, confidence=0.9)
        scored = best_fuzzy_match(snapshot.states, candidate)
        if scored is not None:
            state, score = scored
            logger.debug("Fuzzy match %r -> %r (score %.2f)", candidate, state.name, score)
            return StateMatch(
                state=state,
                match_type=MatchType.FUZZY,
                confidence=round(min(score, 1.0), 3),
            )
    return None


def match_semantic(
    status: TaskStatus,
    _candidates: tuple[str, ...],
    snapshot: StateSnapshot,
) -> StateMatch | None:
    terms = SEMANTIC_VOCABULARY.get(status, ())
    for state in snapshot.states:
        if state.archived:
            continue
        name = state.name.lower()
        for term in terms:
            if term in name or name in term:
                logger.debug("Semantic match for %s: %r (term %r)", status.value, state.name, term)
                return StateMatch(state=state, match_type=MatchType.SEMANTIC, confidence=0.6)
    return None


def match_type_based(
    status: TaskStatus,
    _candidates: tuple[str, ...],
    snapshot: StateSnapshot,
) -> StateMatch | None:
    target_type = STATUS_STATE_TYPES.get(status)
    if target_type is None:
        return None
    for state in snapshot.states_by_type.get(target_type, []):
        if not state.archived:
            return StateMatch(state=state, match_type=MatchType.TYPE_BASED, confidence=0.4)
    return None


def match_last_resort(
    _status: TaskStatus,
    _candidates: tuple[str, ...],
    snapshot: StateSnapshot,
) -> StateMatch | None:
    for state in snapshot.states:
        if not state.archived:
            return StateMatch(state=state, match_type=MatchType.LAST_RESORT, confidence=0.1)
    return None


DEFAULT_TIERS: tuple[MatchTier, ...] = (
    MatchTier(name="exact", match=match_exact),
    MatchTier(name="case-insensitive", match=match_case_insensitive),
    MatchTier(name="fuzzy", match=match_fuzzy, fuzzy=True),
    MatchTier(name="semantic", match=match_semantic, fallback=True),
    MatchTier(name="type-based", match=match_type_based, fallback=True),
    MatchTier(name="last-resort", match=match_last_resort, fallback=True),
)
