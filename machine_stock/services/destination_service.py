from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from machine_stock.models.stock_models import Destination
from machine_stock.services.errors import DuplicateIdentifierError, NotFoundError

DEFAULT_DESTINATIONS = [
    "Tribunal de première instance de Safi – Présidence",
    "Tribunal de première instance de Safi – Parquet",
    "Tribunal de première instance de Safi – Section de famille",
    "Centre du juge de la circulation de Safi",
    "Tribunal de première instance de Essaouira – Présidence",
    "Tribunal de première instance de Essaouira – Parquet",
    "Tribunal de première instance de Youssoufia – Présidence",
    "Tribunal de première instance de Youssoufia – Parquet",
    "Cour d’appel de Safi – Présidence",
    "Cour d’appel de Safi – Section de famille",
    "Cour d’appel de Safi – Parquet",
]


def _clean_name(name: str) -> str:
    cleaned = " ".join((name or "").split())
    if not cleaned:
        raise ValueError("Destination name is required.")
    return cleaned


def get_destination(db: Session, destination_id: int) -> Destination:
    destination = db.get(Destination, destination_id)
    if not destination:
        raise NotFoundError("Destination not found")
    return destination


def list_destinations(db: Session) -> list[Destination]:
    stmt = select(Destination).options(selectinload(Destination.Machines)).order_by(Destination.Name)
    return list(db.execute(stmt).scalars().all())


def find_destination_by_name(db: Session, name: str) -> Destination | None:
    """Exact lookup, used when returning a machine from repair."""
    return db.execute(select(Destination).where(Destination.Name == name)).scalars().first()


def find_destination_like(db: Session, name: str) -> Destination | None:
    """Case and whitespace insensitive lookup, used when operators type a name."""
    key = _clean_name(name).lower()
    return db.execute(
        select(Destination).where(func.lower(func.trim(Destination.Name)) == key)
    ).scalars().first()


def create_destination(db: Session, name: str) -> Destination:
    cleaned = _clean_name(name)
    if find_destination_like(db, cleaned):
        raise DuplicateIdentifierError(f"Destination already exists: {cleaned}")
    destination = Destination(Name=cleaned)
    db.add(destination)
    db.commit()
    db.refresh(destination)
    return destination


def find_or_create_destination(db: Session, name: str) -> Destination:
    """Return the matching destination, staging a new row when none exists."""
    existing = find_destination_like(db, name)
    if existing:
        return existing
    destination = Destination(Name=_clean_name(name))
    db.add(destination)
    db.flush()
    return destination


def seed_default_destinations(db: Session) -> dict:
    created = []
    for name in DEFAULT_DESTINATIONS:
        if find_destination_like(db, name):
            continue
        db.add(Destination(Name=name))
        created.append(name)
    db.commit()
    return {"created": len(created), "names": created}


def serialize_destination(destination: Destination, include_machines: bool = False) -> dict:
    payload = {
        "destinationID": destination.DestinationID,
        "name": destination.Name,
        "createdDate": destination.CreatedDate,
    }
    if include_machines:
        payload["machines"] = [
            {
                "machineID": machine.MachineID,
                "type": machine.Type,
                "reference": machine.Reference,
                "serialNumber": machine.SerialNumber,
                "inventoryNumber": machine.InventoryNumber,
                "status": machine.Status,
            }
            for machine in destination.Machines
        ]
    return payload
