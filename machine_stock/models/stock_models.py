from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from machine_stock.db.base import Base


class Destination(Base):
    __tablename__ = "Destinations"

    DestinationID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False, unique=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Machines = relationship("Machine", back_populates="Destination")


class HistoryEntry(Base):
    __tablename__ = "History"
    __table_args__ = (Index("IX_History_Machine_ChangedAt", "MachineID", "ChangedAt"),)

    HistoryID = Column(Integer, primary_key=True)
    MachineID = Column(Integer, ForeignKey("Machines.MachineID"), nullable=False)
    FromLabel = Column(String(255))
    ToLabel = Column(String(255), nullable=False)
    # assignment / repair_start / repair_end / delivery; NULL on legacy rows.
    Kind = Column(String(20))
    ChangedAt = Column(DateTime, nullable=False, server_default=func.now())

    Machine = relationship("Machine", back_populates="Histories")


class Machine(Base):
    __tablename__ = "Machines"

    MachineID = Column(Integer, primary_key=True)
    Type = Column(String(100), nullable=False)
    Reference = Column(String(255), nullable=False)
    SerialNumber = Column(String(255), nullable=False, unique=True)
    InventoryNumber = Column(String(255), nullable=False, unique=True)
    Status = Column(String(50), nullable=False, default="stocked")
    DestinationID = Column(Integer, ForeignKey("Destinations.DestinationID"))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Destination = relationship("Destination", back_populates="Machines")
    Histories = relationship(
        "HistoryEntry",
        back_populates="Machine",
        order_by=[HistoryEntry.ChangedAt, HistoryEntry.HistoryID],
        cascade="all, delete-orphan",
    )


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    Role = Column(String(20), nullable=False, default="Viewer")
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    PasswordUpdatedAt = Column(Integer)
    IsActive = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
