"""Work out where a machine in repair came from, using only its history.

Both resolvers expect entries ordered oldest first, as returned by
``history_service.list_history``. An empty string means the origin cannot be
determined.
"""

from __future__ import annotations

from typing import Iterable

from machine_stock.services.status_labels import LabelKind, classify_entry

EPISODE_FIRST = "first"
EPISODE_CURRENT = "current"
EPISODES = (EPISODE_FIRST, EPISODE_CURRENT)


def resolve_origin(entries: Iterable) -> str:
    """Return the last real destination seen before the first repair entry.

    For a machine repaired more than once this is the origin of the earliest
    repair episode. Without any repair entry the last real destination wins.
    """
    last_meaningful = ""
    for entry in entries:
        kind = classify_entry(entry)
        if kind is LabelKind.REPAIR:
            return last_meaningful
        if kind is LabelKind.DESTINATION:
            last_meaningful = entry.ToLabel.strip()
    return last_meaningful


def resolve_current_origin(entries: Iterable) -> str:
    """Return the last real destination seen before the most recent repair entry."""
    last_meaningful = ""
    origin_of_latest_repair = None
    for entry in entries:
        kind = classify_entry(entry)
        if kind is LabelKind.REPAIR:
            origin_of_latest_repair = last_meaningful
        elif kind is LabelKind.DESTINATION:
            last_meaningful = entry.ToLabel.strip()
    if origin_of_latest_repair is None:
        return last_meaningful
    return origin_of_latest_repair


def resolve(entries: Iterable, episode: str = EPISODE_FIRST) -> str:
    if episode == EPISODE_CURRENT:
        return resolve_current_origin(entries)
    if episode == EPISODE_FIRST:
        return resolve_origin(entries)
    raise ValueError(f"Unknown origin episode mode: {episode}")
