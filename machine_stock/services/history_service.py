from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from machine_stock.models.stock_models import HistoryEntry, Machine
from machine_stock.services.errors import NotFoundError

HISTORY_LOGGER = logging.getLogger("machine_stock.history")


def list_history(db: Session, machine_id: int | None = None, newest_first: bool = False) -> list[HistoryEntry]:
    stmt = select(HistoryEntry).options(selectinload(HistoryEntry.Machine))
    if machine_id is not None:
        stmt = stmt.where(HistoryEntry.MachineID == machine_id)
    if newest_first:
        stmt = stmt.order_by(HistoryEntry.ChangedAt.desc(), HistoryEntry.HistoryID.desc())
    else:
        stmt = stmt.order_by(HistoryEntry.ChangedAt, HistoryEntry.HistoryID)
    return list(db.execute(stmt).scalars().all())


def append_entry(
    db: Session,
    machine: Machine,
    from_label: str | None,
    to_label: str,
    kind: str | None = None,
    changed_at: datetime | None = None,
) -> HistoryEntry:
    """Stage one ledger row; the caller owns the commit."""
    entry = HistoryEntry(
        Machine=machine,
        FromLabel=(from_label or "").strip() or None,
        ToLabel=to_label.strip(),
        Kind=kind,
        ChangedAt=changed_at or datetime.now(),
    )
    db.add(entry)
    return entry


def delete_entry(db: Session, history_id: int) -> None:
    entry = db.get(HistoryEntry, history_id)
    if not entry:
        raise NotFoundError("History entry not found")
    machine_id = entry.MachineID
    if entry.Machine is not None:
        # delete-orphan on Machine.Histories removes the row.
        entry.Machine.Histories.remove(entry)
    else:
        db.delete(entry)
    db.commit()
    # Machine.Status is not recomputed; the ledger may now disagree with it.
    HISTORY_LOGGER.warning("History entry removed history_id=%s machine_id=%s", history_id, machine_id)


def delete_for_machine(db: Session, machine: Machine) -> int:
    count = len(machine.Histories)
    machine.Histories.clear()
    db.flush()
    return count


def serialize_history(entry: HistoryEntry, include_machine: bool = False) -> dict:
    payload = {
        "historyID": entry.HistoryID,
        "machineID": entry.MachineID,
        "from": entry.FromLabel,
        "to": entry.ToLabel,
        "kind": entry.Kind,
        "changedAt": entry.ChangedAt,
    }
    if include_machine:
        payload["machine"] = {
            "machineID": entry.Machine.MachineID,
            "reference": entry.Machine.Reference,
            "type": entry.Machine.Type,
        } if entry.Machine else None
    return payload
