from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from trb_import.database import Base


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(primary_key=True)
    role_name: Mapped[str] = mapped_column(String(50), unique=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(120), unique=True)
    full_name: Mapped[str] = mapped_column(String(120))
    password_hash: Mapped[str] = mapped_column(Text)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"))
    trainee_type: Mapped[str | None] = mapped_column(String(32))
    rank_label: Mapped[str | None] = mapped_column(String(80))
    category: Mapped[str | None] = mapped_column(String(32))
    trb_applicable: Mapped[bool | None] = mapped_column(Boolean)
    nationality: Mapped[str | None] = mapped_column(String(80))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ShipType(Base):
    __tablename__ = "ship_types"

    id: Mapped[int] = mapped_column(primary_key=True)
    type_code: Mapped[str] = mapped_column(String(20), unique=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Vessel(Base):
    __tablename__ = "vessels"

    id: Mapped[int] = mapped_column(primary_key=True)
    imo_number: Mapped[str] = mapped_column(String(10), unique=True)
    name: Mapped[str] = mapped_column(String(150))
    ship_type_id: Mapped[int] = mapped_column(ForeignKey("ship_types.id"))
    flag: Mapped[str | None] = mapped_column(String(100))
    classification_society: Mapped[str | None] = mapped_column(String(150))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TaskTemplate(Base):
    __tablename__ = "task_templates"
    __table_args__ = (
        UniqueConstraint("title", "ship_type_id", name="unique_task_title_per_type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    part_number: Mapped[int] = mapped_column(Integer)
    section_name: Mapped[str | None] = mapped_column(String(200))
    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[str | None] = mapped_column(Text)
    stcw_reference: Mapped[str | None] = mapped_column(String(200))
    mandatory_for_all: Mapped[bool] = mapped_column(Boolean, default=False)
    ship_type_id: Mapped[int | None] = mapped_column(ForeignKey("ship_types.id"))
    department: Mapped[str] = mapped_column(String(32), default="General")
    trainee_type: Mapped[str] = mapped_column(String(50), default="ALL")
    instructions: Mapped[str | None] = mapped_column(Text)
    safety_requirements: Mapped[str | None] = mapped_column(Text)
    evidence_type: Mapped[str | None] = mapped_column(String(100))
    verification_method: Mapped[str | None] = mapped_column(String(100))
    frequency: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CadetVesselAssignment(Base):
    __tablename__ = "cadet_vessel_assignments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE','COMPLETED','CANCELLED')",
            name="cadet_vessel_assignment_status_chk",
        ),
        UniqueConstraint("cadet_id", "vessel_id", "date_joined", name="unique_cadet_vessel_join"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    cadet_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    vessel_id: Mapped[int] = mapped_column(ForeignKey("vessels.id"))
    date_joined: Mapped[date] = mapped_column(Date)
    date_left: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE")
    rank: Mapped[str | None] = mapped_column(String(80))
    assigned_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
