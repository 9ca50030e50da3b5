"""Translation between free-text labels and the machine lifecycle vocabulary.

Statuses and history labels have historically been typed by hand (French and
English wording, accents, mixed case). Everything that enters the system is
mapped here onto ``MachineStatus`` / ``LabelKind``; the lifecycle engine only
ever compares enum members.
"""

from __future__ import annotations

import unicodedata
from enum import Enum

from machine_stock.services.errors import UnknownStatusError


class MachineStatus(str, Enum):
    STOCKED = "stocked"
    ASSIGNED = "assigned"
    REPAIRING = "repairing"
    DELIVERED = "delivered"


class HistoryKind(str, Enum):
    ASSIGNMENT = "assignment"
    REPAIR_START = "repair_start"
    REPAIR_END = "repair_end"
    DELIVERY = "delivery"


class LabelKind(Enum):
    EMPTY = "empty"
    STOCK = "stock"
    REPAIR = "repair"
    DELIVERED = "delivered"
    DESTINATION = "destination"


STOCK_LABEL = "Stock"
REPAIR_LABEL = "Repair"
DELIVERED_LABEL = "Machines delivered"
ASSIGNED_LABEL = "Assigned"

_REPAIR_KEYWORDS = ("repair", "reparation")
_DELIVERED_KEYWORDS = ("deliver", "delivr")
_STOCK_KEYWORDS = ("stock",)
_ASSIGNED_KEYWORDS = ("assign", "affect")

_KIND_TO_LABEL_KIND = {
    HistoryKind.ASSIGNMENT.value: LabelKind.DESTINATION,
    HistoryKind.REPAIR_END.value: LabelKind.DESTINATION,
    HistoryKind.REPAIR_START.value: LabelKind.REPAIR,
    HistoryKind.DELIVERY.value: LabelKind.DELIVERED,
}


def fold_label(raw: str | None) -> str:
    """Lower-case, strip and drop accents so "Réparation" folds to "reparation"."""
    text = unicodedata.normalize("NFKD", (raw or "").strip())
    return "".join(ch for ch in text if not unicodedata.combining(ch)).casefold()


def _contains_any(folded: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in folded for keyword in keywords)


def classify_label(raw: str | None) -> LabelKind:
    folded = fold_label(raw)
    if not folded:
        return LabelKind.EMPTY
    if _contains_any(folded, _REPAIR_KEYWORDS):
        return LabelKind.REPAIR
    if _contains_any(folded, _DELIVERED_KEYWORDS):
        return LabelKind.DELIVERED
    if _contains_any(folded, _STOCK_KEYWORDS):
        return LabelKind.STOCK
    return LabelKind.DESTINATION


def classify_entry(entry) -> LabelKind:
    """Classify the ``to`` side of a history entry.

    Entries written by the lifecycle engine carry an explicit ``Kind``; rows
    imported from the label-only era fall back to keyword matching.
    """
    to_label = (getattr(entry, "ToLabel", None) or "").strip()
    kind = getattr(entry, "Kind", None)
    if kind in _KIND_TO_LABEL_KIND:
        mapped = _KIND_TO_LABEL_KIND[kind]
        if mapped is LabelKind.DESTINATION and not to_label:
            return LabelKind.EMPTY
        return mapped
    return classify_label(to_label)


def parse_status(raw: str | None) -> MachineStatus:
    """Map a stored or user-supplied status label onto ``MachineStatus``.

    Accepts the canonical values as well as legacy wording such as
    "stocké", "affectée", "en cours de réparation" or "délivrée".
    """
    folded = fold_label(raw)
    if not folded:
        raise UnknownStatusError("Status is required.")
    for status in MachineStatus:
        if folded == status.value:
            return status
    if _contains_any(folded, _REPAIR_KEYWORDS):
        return MachineStatus.REPAIRING
    if _contains_any(folded, _DELIVERED_KEYWORDS):
        return MachineStatus.DELIVERED
    if _contains_any(folded, _STOCK_KEYWORDS):
        return MachineStatus.STOCKED
    if _contains_any(folded, _ASSIGNED_KEYWORDS):
        return MachineStatus.ASSIGNED
    raise UnknownStatusError(f"Unknown machine status: {raw}")


def location_label(machine) -> str:
    """Label the current position of a machine the way history ``to`` fields do."""
    status = parse_status(machine.Status)
    if status is MachineStatus.REPAIRING:
        return REPAIR_LABEL
    if status is MachineStatus.DELIVERED:
        return DELIVERED_LABEL
    if machine.Destination is not None:
        return machine.Destination.Name
    return STOCK_LABEL


def stored_status(raw: str | None) -> MachineStatus | None:
    """Like ``parse_status`` but returns None for labels that cannot be mapped."""
    try:
        return parse_status(raw)
    except UnknownStatusError:
        return None
