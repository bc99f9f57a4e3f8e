"""Helpers for session -> exercise -> set trees."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, TypeVar

from coachplan.content.types import Exercise, SetEntry
from coachplan.store.base import DocumentStore

_Ordered = TypeVar("_Ordered")


def sort_by_order(items: Iterable[_Ordered]) -> list[_Ordered]:
    """Stable sort on the `order` attribute (missing order sorts first)."""
    return sorted(items, key=lambda item: getattr(item, "order", 0) or 0)


def normalize_sets(raw_sets: Iterable[dict[str, Any] | SetEntry]) -> list[SetEntry]:
    """Build SetEntry models, filling in missing ids and positional order."""
    result = []
    for index, raw in enumerate(raw_sets):
        data = raw.model_dump(by_alias=True) if isinstance(raw, SetEntry) else dict(raw)
        data.setdefault("id", DocumentStore.new_id())
        if data.get("order") is None:
            data["order"] = index
        result.append(SetEntry.model_validate(data))
    return result


def normalize_exercises(raw_exercises: Iterable[dict[str, Any] | Exercise], default_title: str | None = None) -> list[Exercise]:
    """Build Exercise models (with their sets), filling in ids, order and titles."""
    result = []
    for index, raw in enumerate(raw_exercises):
        data = raw.model_dump(by_alias=True) if isinstance(raw, Exercise) else dict(raw)
        data.setdefault("id", DocumentStore.new_id())
        if data.get("order") is None:
            data["order"] = index
        title = data.get("title") or data.get("name") or default_title
        data["title"] = title
        data.setdefault("name", title)
        data["sets"] = normalize_sets(data.get("sets") or [])
        result.append(Exercise.model_validate(data))
    return result


def clone_exercises_with_new_ids(exercises: Iterable[Exercise]) -> list[Exercise]:
    """Deep copy exercises and sets under fresh ids (used when re-adding a moved session)."""
    cloned = []
    for ex in sort_by_order(exercises):
        sets = [s.model_copy(update={"id": DocumentStore.new_id()}, deep=True) for s in sort_by_order(ex.sets)]
        cloned.append(ex.model_copy(update={"id": DocumentStore.new_id(), "sets": sets}, deep=True))
    return cloned


def find_exercise(exercises: list[Exercise], exercise_id: str) -> Exercise | None:
    return next((ex for ex in exercises if ex.id == exercise_id), None)
