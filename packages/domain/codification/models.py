"""
ORM models for the codification tables

item_codes             canonical taxonomy (append-only, deactivated never deleted)
item_code_aliases      normalized name -> code, the learned dictionary
codified_extractions   one per document, items stored as a JSON list
item_categories        display grouping and Smart Pass context
codification_activity  audit trail written by the event worker
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from packages.common.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

# Column widths; request models validate against the same limits
NAME_LENGTH = 500
CODE_LENGTH = 200
DISPLAY_NAME_LENGTH = 200
DOCUMENT_ID_LENGTH = 200
CATEGORY_LENGTH = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemCode(Base):
    __tablename__ = "item_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(CODE_LENGTH), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(DISPLAY_NAME_LENGTH), nullable=False)
    category: Mapped[str] = mapped_column(String(CATEGORY_LENGTH), nullable=False)
    data_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_system_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_item_codes_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<ItemCode {self.code} active={self.is_active}>"


class ItemCodeAlias(Base):
    __tablename__ = "item_code_aliases"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    alias_raw: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    alias_normalized: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    canonical_code: Mapped[str] = mapped_column(String(CODE_LENGTH), nullable=False)
    canonical_code_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("item_codes.id"), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_item_code_aliases_alias_normalized", "alias_normalized"),
        Index("ix_item_code_aliases_canonical_code_id", "canonical_code_id"),
    )

    def __repr__(self) -> str:
        return f"<ItemCodeAlias {self.alias_normalized!r} -> {self.canonical_code}>"


class CodifiedExtraction(Base):
    __tablename__ = "codified_extractions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[str] = mapped_column(String(DOCUMENT_ID_LENGTH), unique=True, nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(DOCUMENT_ID_LENGTH))
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    mapping_stats: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    fast_pass_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    smart_pass_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_fully_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    codified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    smart_pass_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # UPDATE ... WHERE version = :read_version; zero rows -> StaleDataError
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_codified_extractions_project_id", "project_id"),
    )

    def __repr__(self) -> str:
        return f"<CodifiedExtraction {self.id} doc={self.document_id} v{self.version}>"


class ItemCategory(Base):
    __tablename__ = "item_categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(CATEGORY_LENGTH), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(CATEGORY_LENGTH), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    examples: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    display_order: Mapped[Optional[int]] = mapped_column(Integer)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class CodificationActivity(Base):
    __tablename__ = "codification_activity"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    extraction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_codification_activity_extraction_id", "extraction_id"),
        Index("ix_codification_activity_event_type", "event_type"),
    )
