from __future__ import annotations

from typing import Optional

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from suppfacts.core.database import Base


class ExtractionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SALVAGED = "salvaged"
    FAILED = "failed"


class ReviewStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


TERMINAL_REVIEW_STATUSES = frozenset({ReviewStatus.RESOLVED, ReviewStatus.DISMISSED})


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    product_slogan: Mapped[Optional[str]] = mapped_column(Text)
    product_description: Mapped[Optional[str]] = mapped_column(Text)
    subbrand: Mapped[Optional[str]] = mapped_column(String(200))
    directions: Mapped[Optional[str]] = mapped_column(Text)
    caution: Mapped[Optional[str]] = mapped_column(Text)
    references: Mapped[Optional[str]] = mapped_column(Text)
    dietary_attributes: Mapped[list[str]] = mapped_column(JSON, default=list)
    pdf_path: Mapped[Optional[str]] = mapped_column(Text)
    folder_path: Mapped[Optional[str]] = mapped_column(Text)

    status: Mapped[ExtractionStatus] = mapped_column(
        Enum(ExtractionStatus, native_enum=False, length=20),
        default=ExtractionStatus.PENDING,
        nullable=False,
    )
    provider: Mapped[Optional[str]] = mapped_column(String(20))
    strategy: Mapped[Optional[str]] = mapped_column(String(30))
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    raw_response: Mapped[Optional[str]] = mapped_column(Text)
    completeness: Mapped[Optional[float]] = mapped_column(Float)

    # Verification (second-model) results
    verification_provider: Mapped[Optional[str]] = mapped_column(String(20))
    verification_raw_response: Mapped[Optional[str]] = mapped_column(Text)
    similarity_score: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    supplement_facts: Mapped[Optional[SupplementFactsRow]] = relationship(
        back_populates="product", cascade="all, delete-orphan", uselist=False
    )
    ingredients: Mapped[list[IngredientRow]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="IngredientRow.position"
    )

    __table_args__ = (
        Index("idx_products_status", "status"),
        Index("idx_products_subbrand", "subbrand"),
    )


class SupplementFactsRow(Base):
    __tablename__ = "supplement_facts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    servings: Mapped[Optional[str]] = mapped_column(Text)
    servings_per_container: Mapped[Optional[str]] = mapped_column(Text)
    calories: Mapped[Optional[str]] = mapped_column(Text)
    protein: Mapped[Optional[str]] = mapped_column(Text)

    product: Mapped[Product] = relationship(back_populates="supplement_facts")
    nutrients: Mapped[list[NutrientRow]] = relationship(
        back_populates="facts", cascade="all, delete-orphan", order_by="NutrientRow.position"
    )


class NutrientRow(Base):
    __tablename__ = "nutrients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    facts_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("supplement_facts.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    # "<1" / "100" and "mg" / "mg RAE"; both None when the amount is unknown
    amount: Mapped[Optional[str]] = mapped_column(String(40))
    unit: Mapped[Optional[str]] = mapped_column(String(40))
    daily_value_percent_adult: Mapped[Optional[str]] = mapped_column(String(20))
    daily_value_percent_children: Mapped[Optional[str]] = mapped_column(String(20))
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    facts: Mapped[SupplementFactsRow] = relationship(back_populates="nutrients")

    __table_args__ = (Index("idx_nutrients_facts", "facts_id"),)


class IngredientRow(Base):
    __tablename__ = "ingredients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_organic: Mapped[bool] = mapped_column(Boolean, default=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    product: Mapped[Product] = relationship(back_populates="ingredients")


class ValidationWarningRow(Base):
    __tablename__ = "validation_warnings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(20), nullable=False)
    field_path: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(20))  # provider or "hybrid"
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("idx_validation_warnings_item", "item_id"),)


class DiscrepancyRow(Base):
    __tablename__ = "discrepancies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(20), nullable=False)
    field_path: Mapped[str] = mapped_column(Text, nullable=False)
    value_a: Mapped[Optional[str]] = mapped_column(Text)
    value_b: Mapped[Optional[str]] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    confidence_score: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_discrepancies_item", "item_id"),
        Index("idx_discrepancies_severity", "severity"),
    )


class ReviewEntry(Base):
    __tablename__ = "review_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    total_discrepancies: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    high_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    medium_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[ReviewStatus] = mapped_column(
        Enum(ReviewStatus, native_enum=False, length=20),
        default=ReviewStatus.PENDING,
        nullable=False,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("idx_review_queue_status", "status", "priority"),)


class ProcessingLog(Base):
    __tablename__ = "processing_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[Optional[str]] = mapped_column(String(20))
    pdf_path: Mapped[Optional[str]] = mapped_column(Text)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)  # success | error | warning
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    elapsed_ms: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_processing_log_item", "item_id"),
        Index("idx_processing_log_status", "status"),
    )
