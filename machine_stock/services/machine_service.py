"""Machine lifecycle engine.

Every transition reads the machine row under a lock, stages exactly one
history entry describing the move and updates the machine in the same
commit. Nothing is written when a precondition fails.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from machine_stock.models.stock_models import Destination, HistoryEntry, Machine
from machine_stock.services import history_service
from machine_stock.services.destination_service import find_destination_by_name, get_destination
from machine_stock.services.errors import (
    DestinationNotFoundError,
    DuplicateIdentifierError,
    InvalidRetentionError,
    InvalidStateError,
    NotFoundError,
    OriginUndeterminableError,
)
from machine_stock.services.origin_resolver import EPISODE_FIRST, resolve
from machine_stock.services.status_labels import (
    ASSIGNED_LABEL,
    DELIVERED_LABEL,
    REPAIR_LABEL,
    HistoryKind,
    MachineStatus,
    location_label,
    parse_status,
    stored_status,
)

LIFECYCLE_LOGGER = logging.getLogger("machine_stock.lifecycle")

DEFAULT_RETENTION_YEARS = 5

ALLOWED_TRANSITIONS = {
    MachineStatus.STOCKED: {MachineStatus.ASSIGNED, MachineStatus.REPAIRING, MachineStatus.DELIVERED},
    MachineStatus.ASSIGNED: {MachineStatus.ASSIGNED, MachineStatus.REPAIRING, MachineStatus.DELIVERED},
    MachineStatus.REPAIRING: {MachineStatus.ASSIGNED, MachineStatus.DELIVERED},
    MachineStatus.DELIVERED: set(),
}

_IDENTITY_FIELDS = {
    "type": "Type",
    "reference": "Reference",
    "serialNumber": "SerialNumber",
    "inventoryNumber": "InventoryNumber",
}


@contextmanager
def _unit_of_work(db: Session):
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


def _lock_machine(db: Session, machine_id: int) -> Machine:
    machine = db.execute(
        select(Machine)
        .where(Machine.MachineID == machine_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not machine:
        raise NotFoundError("Machine not found")
    return machine


def _check_transition(machine: Machine, target: MachineStatus) -> MachineStatus:
    current = parse_status(machine.Status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateError(f"Invalid state transition: {current.value} -> {target.value}")
    return current


def _clean_identifier(value: str | None, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError(f"{label} is required.")
    return cleaned


def _ensure_unique(db: Session, column, value: str, label: str, exclude_id: int | None = None) -> None:
    stmt = select(Machine.MachineID).where(func.lower(func.trim(column)) == value.strip().lower())
    if exclude_id is not None:
        stmt = stmt.where(Machine.MachineID != exclude_id)
    if db.execute(stmt).first():
        raise DuplicateIdentifierError(f"{label} already in use: {value}")


def years_before(moment: datetime, years: int) -> datetime:
    if years < 0 or moment.year - years < datetime.min.year:
        raise InvalidRetentionError(f"Retention period out of range: {years} years")
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        # 29 February in a non-leap target year.
        return moment.replace(year=moment.year - years, day=28)


def create_machine(
    db: Session,
    *,
    machine_type: str,
    reference: str,
    serial_number: str,
    inventory_number: str,
) -> Machine:
    serial = _clean_identifier(serial_number, "Serial number")
    inventory = _clean_identifier(inventory_number, "Inventory number")
    _ensure_unique(db, Machine.SerialNumber, serial, "Serial number")
    _ensure_unique(db, Machine.InventoryNumber, inventory, "Inventory number")

    now = datetime.now()
    machine = Machine(
        Type=_clean_identifier(machine_type, "Type"),
        Reference=_clean_identifier(reference, "Reference"),
        SerialNumber=serial,
        InventoryNumber=inventory,
        Status=MachineStatus.STOCKED.value,
        Destination=None,
        CreatedDate=now,
        UpdatedDate=now,
    )
    with _unit_of_work(db):
        db.add(machine)
    db.refresh(machine)
    LIFECYCLE_LOGGER.info("Machine created machine_id=%s serial=%s", machine.MachineID, serial)
    return machine


def _apply_assignment(db: Session, machine: Machine, destination: Destination, kind: HistoryKind, from_label: str) -> None:
    history_service.append_entry(db, machine, from_label, destination.Name, kind.value)
    machine.Destination = destination
    machine.Status = MachineStatus.ASSIGNED.value
    machine.UpdatedDate = datetime.now()


def _apply_repair(db: Session, machine: Machine) -> None:
    _check_transition(machine, MachineStatus.REPAIRING)
    history_service.append_entry(db, machine, location_label(machine), REPAIR_LABEL, HistoryKind.REPAIR_START.value)
    machine.Destination = None
    machine.Status = MachineStatus.REPAIRING.value
    machine.UpdatedDate = datetime.now()


def _apply_delivery(db: Session, machine: Machine, now: datetime | None = None) -> None:
    _check_transition(machine, MachineStatus.DELIVERED)
    from_label = machine.Destination.Name if machine.Destination is not None else ASSIGNED_LABEL
    history_service.append_entry(db, machine, from_label, DELIVERED_LABEL, HistoryKind.DELIVERY.value, changed_at=now)
    machine.Destination = None
    machine.Status = MachineStatus.DELIVERED.value
    machine.UpdatedDate = now or datetime.now()


def assign_machine(db: Session, machine_id: int, destination_id: int) -> Machine:
    with _unit_of_work(db):
        machine = _lock_machine(db, machine_id)
        destination = get_destination(db, destination_id)
        _check_transition(machine, MachineStatus.ASSIGNED)
        _apply_assignment(db, machine, destination, HistoryKind.ASSIGNMENT, location_label(machine))
    LIFECYCLE_LOGGER.info("Machine assigned machine_id=%s destination=%s", machine_id, destination.Name)
    return machine


def enter_repair(db: Session, machine_id: int) -> Machine:
    with _unit_of_work(db):
        machine = _lock_machine(db, machine_id)
        _apply_repair(db, machine)
    LIFECYCLE_LOGGER.info("Machine entered repair machine_id=%s", machine_id)
    return machine


def finish_repair(db: Session, machine_id: int, episode: str = EPISODE_FIRST) -> Machine:
    with _unit_of_work(db):
        machine = _lock_machine(db, machine_id)
        if parse_status(machine.Status) is not MachineStatus.REPAIRING:
            raise InvalidStateError("Machine is not in repair.")
        origin = resolve(history_service.list_history(db, machine_id), episode)
        if not origin:
            raise OriginUndeterminableError("Origin undeterminable: no destination precedes the repair in history.")
        destination = find_destination_by_name(db, origin)
        if destination is None:
            raise DestinationNotFoundError(f"Destination not found for origin: {origin}")
        _apply_assignment(db, machine, destination, HistoryKind.REPAIR_END, REPAIR_LABEL)
    LIFECYCLE_LOGGER.info("Machine repair finished machine_id=%s origin=%s", machine_id, origin)
    return machine


def deliver_machine(db: Session, machine_id: int) -> Machine:
    with _unit_of_work(db):
        machine = _lock_machine(db, machine_id)
        _apply_delivery(db, machine)
    LIFECYCLE_LOGGER.info("Machine delivered machine_id=%s", machine_id)
    return machine


def update_machine(db: Session, machine_id: int, changes: dict[str, Any]) -> Machine:
    """Edit identity fields; a status change is routed to the matching transition."""
    with _unit_of_work(db):
        machine = _lock_machine(db, machine_id)
        for field, attribute in _IDENTITY_FIELDS.items():
            if field not in changes or changes[field] is None:
                continue
            value = _clean_identifier(changes[field], field)
            if field == "serialNumber":
                _ensure_unique(db, Machine.SerialNumber, value, "Serial number", exclude_id=machine_id)
            elif field == "inventoryNumber":
                _ensure_unique(db, Machine.InventoryNumber, value, "Inventory number", exclude_id=machine_id)
            setattr(machine, attribute, value)
        machine.UpdatedDate = datetime.now()

        raw_status = changes.get("status")
        if raw_status is not None:
            target = parse_status(raw_status)
            current = parse_status(machine.Status)
            if target is MachineStatus.REPAIRING and current is not MachineStatus.REPAIRING:
                _apply_repair(db, machine)
            elif target is MachineStatus.DELIVERED and current is not MachineStatus.DELIVERED:
                _apply_delivery(db, machine)
            elif target is not current:
                raise InvalidStateError(
                    f"Status {target.value} cannot be set by editing; use the assign or finish-repair operations."
                )
    return machine


def sweep_retention(db: Session, years: int = DEFAULT_RETENTION_YEARS, now: datetime | None = None) -> dict:
    """Deliver every machine with a movement at or before ``now - years``.

    Each machine is committed on its own; a failure is logged and reported
    without stopping the sweep.
    """
    now = now or datetime.now()
    cutoff = years_before(now, years)
    rows = db.execute(
        select(Machine.MachineID, Machine.Reference, Machine.Status)
        .where(Machine.Histories.any(HistoryEntry.ChangedAt <= cutoff))
        .order_by(Machine.MachineID)
    ).all()

    references: list[str] = []
    failed: list[dict] = []
    for machine_id, reference, status in rows:
        # Legacy rows may spell delivered as "délivrée".
        if stored_status(status) is MachineStatus.DELIVERED:
            continue
        try:
            with _unit_of_work(db):
                _apply_delivery(db, _lock_machine(db, machine_id), now)
        except Exception as exc:
            LIFECYCLE_LOGGER.warning("Retention sweep failed machine_id=%s error=%s", machine_id, exc)
            failed.append({"machineID": machine_id, "reference": reference, "error": str(exc)})
            continue
        references.append(reference)

    LIFECYCLE_LOGGER.info(
        "Retention sweep done cutoff=%s updated=%s failed=%s", cutoff.isoformat(), len(references), len(failed)
    )
    return {
        "updatedCount": len(references),
        "machineReferences": references,
        "cutoff": cutoff,
        "failed": failed,
    }


def delete_machine(db: Session, machine_id: int) -> int:
    """Remove a machine and its ledger; returns the number of history rows removed."""
    with _unit_of_work(db):
        machine = _lock_machine(db, machine_id)
        removed = history_service.delete_for_machine(db, machine)
        db.delete(machine)
    LIFECYCLE_LOGGER.info("Machine deleted machine_id=%s history_removed=%s", machine_id, removed)
    return removed


def bulk_delete_machines(db: Session, machine_ids: Iterable[int]) -> dict:
    deleted: list[int] = []
    not_found: list[int] = []
    failed: list[dict] = []
    for machine_id in dict.fromkeys(machine_ids):
        try:
            delete_machine(db, machine_id)
        except NotFoundError:
            not_found.append(machine_id)
            continue
        except Exception as exc:
            LIFECYCLE_LOGGER.warning("Bulk delete failed machine_id=%s error=%s", machine_id, exc)
            failed.append({"machineID": machine_id, "error": str(exc)})
            continue
        deleted.append(machine_id)
    return {"deletedCount": len(deleted), "deletedIDs": deleted, "notFound": not_found, "failed": failed}


def get_machine(db: Session, machine_id: int) -> Machine:
    machine = db.get(Machine, machine_id)
    if not machine:
        raise NotFoundError("Machine not found")
    return machine


def list_machines(db: Session, status: MachineStatus | None = None, destination_id: int | None = None) -> list[Machine]:
    """List machines, matching ``status`` through the legacy label translation."""
    stmt = select(Machine).options(selectinload(Machine.Destination)).order_by(Machine.MachineID)
    if status is MachineStatus.STOCKED:
        stmt = stmt.where(Machine.DestinationID.is_(None))
    if destination_id is not None:
        stmt = stmt.where(Machine.DestinationID == destination_id)
    machines = db.execute(stmt).scalars().all()
    if status is None:
        return list(machines)
    return [machine for machine in machines if stored_status(machine.Status) is status]


def list_repairs(db: Session, episode: str = EPISODE_FIRST) -> list[tuple[Machine, str]]:
    stmt = select(Machine).order_by(Machine.Type, Machine.Reference)
    machines = [
        machine
        for machine in db.execute(stmt).scalars().all()
        if stored_status(machine.Status) is MachineStatus.REPAIRING
    ]
    return [(machine, resolve(machine.Histories, episode)) for machine in machines]


def serialize_machine(machine: Machine, origin: str | None = None) -> dict:
    payload = {
        "machineID": machine.MachineID,
        "type": machine.Type,
        "reference": machine.Reference,
        "serialNumber": machine.SerialNumber,
        "inventoryNumber": machine.InventoryNumber,
        "status": machine.Status,
        "destinationID": machine.DestinationID,
        "destination": {
            "destinationID": machine.Destination.DestinationID,
            "name": machine.Destination.Name,
        } if machine.Destination else None,
        "location": location_label(machine),
        "createdDate": machine.CreatedDate,
        "updatedDate": machine.UpdatedDate,
    }
    if origin is not None:
        payload["origin"] = origin
    return payload
