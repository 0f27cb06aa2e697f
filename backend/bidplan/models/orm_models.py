"""ORM Models for the plan takeoff backend — SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, Numeric, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from bidplan.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── AUTH ──────────────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── JOBS & PLANS ──────────────────────────────────────────────────────────────
class Job(Base):
    __tablename__ = "jobs"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(50), default="active")
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    plans: Mapped[list["Plan"]] = relationship("Plan", back_populates="job")


class Plan(Base):
    __tablename__ = "plans"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    job_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("jobs.id"), index=True)
    title: Mapped[Optional[str]] = mapped_column(String(255))
    file_name: Mapped[Optional[str]] = mapped_column(String(500))
    file_path: Mapped[Optional[str]] = mapped_column(Text)
    num_pages: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(50), default="uploaded")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    job: Mapped[Optional["Job"]] = relationship("Job", back_populates="plans")


# ── SCALE SETTINGS ────────────────────────────────────────────────────────────
class PlanScaleSetting(Base):
    __tablename__ = "plan_scale_settings"
    __table_args__ = (
        UniqueConstraint("plan_id", "page_number", name="uq_plan_scale_page"),
    )
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    plan_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("plans.id"), nullable=False)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scale_ratio: Mapped[str] = mapped_column(String(100), nullable=False)
    pixels_per_unit: Mapped[float] = mapped_column(Numeric(14, 6), nullable=False)
    unit: Mapped[str] = mapped_column(String(5), nullable=False)
    calibration_line: Mapped[Optional[dict]] = mapped_column(JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ── DRAWINGS (measurement annotations) ────────────────────────────────────────
class PlanDrawing(Base):
    __tablename__ = "plan_drawings"
    __table_args__ = (
        Index("ix_plan_drawings_plan_user", "plan_id", "user_id"),
    )
    # Client-assigned identifier, kept stable between browser and storage
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=gen_uuid)
    plan_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("plans.id"), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    drawing_type: Mapped[str] = mapped_column(String(30), nullable=False)  # "measurement" | "area"
    geometry: Mapped[dict] = mapped_column(JSONB, nullable=False)
    style: Mapped[Optional[dict]] = mapped_column(JSONB)
    measurement_data: Mapped[Optional[dict]] = mapped_column(JSONB)
    label: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    tag_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("plan_measurement_tags.id", ondelete="SET NULL")
    )
    layer_name: Mapped[Optional[str]] = mapped_column(String(100), default="measurements")
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    z_index: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PlanMeasurementTag(Base):
    __tablename__ = "plan_measurement_tags"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    plan_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("plans.id"), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ── TAKEOFF ANALYSIS ──────────────────────────────────────────────────────────
class PlanTakeoffAnalysis(Base):
    __tablename__ = "plan_takeoff_analysis"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    plan_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("plans.id"), nullable=False, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("jobs.id"))
    # Raw AI payload: JSON string or structured data, items possibly under a legacy key
    items: Mapped[Optional[dict]] = mapped_column(JSONB)
    summary: Mapped[Optional[dict]] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(String(30), default="completed")  # queued | completed | failed
    ai_model: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
