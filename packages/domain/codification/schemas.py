"""
Data schemas for the codification module

Extracted values are validated at the boundary: every item carries one of the
four data types and its value is coerced on ingestion (Decimal for currency,
number and percentage; str for string) instead of travelling as an untyped blob.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from packages.domain.codification.models import (
    CATEGORY_LENGTH,
    CODE_LENGTH,
    DISPLAY_NAME_LENGTH,
    NAME_LENGTH,
)
from packages.domain.codification.normalization import coerce_value, detect_data_type


class DataType(str, Enum):
    CURRENCY = "currency"
    NUMBER = "number"
    PERCENTAGE = "percentage"
    STRING = "string"


class MappingStatus(str, Enum):
    """Resolution state of one extracted item"""
    PENDING_REVIEW = "pending_review"   # No candidate code yet
    SUGGESTED = "suggested"             # Fast/Smart Pass proposed a code
    CONFIRMED = "confirmed"             # A human decided


class AliasSource(str, Enum):
    """Where an alias came from (also its tie-break priority, highest first)"""
    USER_CONFIRMED = "user_confirmed"
    MANUAL = "manual"
    AI_SUGGESTED = "ai_suggested"


class MatchType(str, Enum):
    """How the current suggestion or decision was reached"""
    EXACT = "exact"         # Normalized alias hit
    FUZZY = "fuzzy"         # Similarity above threshold
    MODEL = "model"         # Smart Pass resolver
    FALLBACK = "fallback"   # Deterministic name-derived proposal
    MANUAL = "manual"       # User chose the code


# =============================================================================
# Ingestion
# =============================================================================


class ExtractedItemInput(BaseModel):
    """One raw line item handed over by the extraction pipeline"""
    name: str = Field(
        ..., min_length=1, max_length=NAME_LENGTH, description="Item name as written in the document"
    )
    value: Optional[Union[Decimal, str]] = Field(None, description="Extracted value")
    data_type: Optional[DataType] = Field(None, description="Inferred from value/currency when omitted")
    category: Optional[str] = Field(None, max_length=CATEGORY_LENGTH, description="Category hint from extraction")
    currency: Optional[str] = Field(None, description="ISO currency if detected")

    @model_validator(mode="before")
    @classmethod
    def infer_data_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("data_type"):
            data = dict(data)
            data["data_type"] = detect_data_type(data.get("value"), data.get("currency"))
        return data

    @model_validator(mode="after")
    def coerce_value_for_type(self) -> "ExtractedItemInput":
        self.value = coerce_value(self.value, self.data_type.value)
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Site Acquisition Cost",
                "value": "1250000",
                "category": "Site Costs",
                "currency": "GBP",
            }
        }


# =============================================================================
# Extraction record
# =============================================================================


class CodifiedItem(BaseModel):
    """
    One row inside a CodifiedExtraction.

    item_code is set if and only if mapping_status is confirmed.
    """
    id: str
    original_name: str
    value: Optional[Union[Decimal, str]] = None
    data_type: DataType = DataType.STRING
    category: str = "Uncategorized"

    item_code: Optional[str] = None
    suggested_code: Optional[str] = None
    suggested_code_id: Optional[UUID] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    mapping_status: MappingStatus = MappingStatus.PENDING_REVIEW

    match_type: Optional[MatchType] = None
    stale_code: bool = False
    is_manual: bool = False

    @model_validator(mode="after")
    def check_item_invariants(self) -> "CodifiedItem":
        self.value = coerce_value(self.value, self.data_type.value)
        confirmed = self.mapping_status == MappingStatus.CONFIRMED
        if confirmed and not self.item_code:
            raise ValueError("confirmed items must carry an item_code")
        if self.item_code and not confirmed:
            raise ValueError("item_code may only be set on confirmed items")
        return self

    def evolve(self, **changes: Any) -> "CodifiedItem":
        """Return a validated copy with the given fields replaced"""
        return CodifiedItem.model_validate({**self.model_dump(), **changes})


class MappingStats(BaseModel):
    """Counts per mapping status (derived, recomputed on every write)"""
    pending_review: int = 0
    suggested: int = 0
    confirmed: int = 0
    total: int = 0

    @classmethod
    def from_items(cls, items: List[CodifiedItem]) -> "MappingStats":
        stats = cls(total=len(items))
        for item in items:
            if item.mapping_status == MappingStatus.PENDING_REVIEW:
                stats.pending_review += 1
            elif item.mapping_status == MappingStatus.SUGGESTED:
                stats.suggested += 1
            else:
                stats.confirmed += 1
        return stats

    @property
    def is_fully_confirmed(self) -> bool:
        return self.confirmed == self.total


class ExtractionView(BaseModel):
    id: UUID
    document_id: str
    project_id: Optional[str] = None
    items: List[CodifiedItem]
    stats: MappingStats
    is_fully_confirmed: bool
    fast_pass_completed: bool
    smart_pass_completed: bool
    codified_at: datetime
    smart_pass_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    version: int


# =============================================================================
# Alias index
# =============================================================================


class AliasMatch(BaseModel):
    """Result of an Alias Index lookup"""
    canonical_code: str
    canonical_code_id: UUID
    confidence: float = Field(..., ge=0.0, le=1.0)
    match_type: MatchType
    similarity: float = Field(..., ge=0.0, le=1.0)
    code_active: bool = True
    alias_source: AliasSource


# =============================================================================
# Model-assisted resolver contract
# =============================================================================


class PendingItemContext(BaseModel):
    """What the resolver sees of one item"""
    index: int
    name: str
    value: Optional[Union[Decimal, str]] = None
    category_hint: Optional[str] = None


class TaxonomyEntry(BaseModel):
    code: str
    display_name: str
    category: str
    data_type: DataType


class CategoryEntry(BaseModel):
    name: str
    description: Optional[str] = None
    examples: List[str] = Field(default_factory=list)


class ResolutionContext(BaseModel):
    """Bounds the model's answer space to the known taxonomy"""
    codes_by_category: Dict[str, List[TaxonomyEntry]] = Field(default_factory=dict)
    categories: List[CategoryEntry] = Field(default_factory=list)
    aliases_by_code: Dict[str, List[str]] = Field(default_factory=dict)


class ResolverDecision(BaseModel):
    """One answer from the resolver: an existing code or a new-code proposal"""
    item_index: int = Field(..., ge=1, description="1-based position in the pending list")
    suggested_code: str
    display_name: str
    category: str
    data_type: DataType = DataType.CURRENCY
    is_new_code: bool = False
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: Optional[str] = None


class ResolverUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: Decimal = Decimal("0")


class ResolverResponse(BaseModel):
    decisions: List[ResolverDecision]
    usage: ResolverUsage = Field(default_factory=ResolverUsage)


# =============================================================================
# Operation results
# =============================================================================


class FastPassStats(MappingStats):
    exact_hits: int = 0
    fuzzy_hits: int = 0


class FastPassResult(BaseModel):
    extraction_id: UUID
    document_id: str
    items: List[CodifiedItem]
    stats: FastPassStats


class SmartPassSuggestion(BaseModel):
    item_id: str
    original_name: str
    suggested_code: str
    suggested_code_id: Optional[UUID] = None
    suggested_display_name: str
    suggested_category: str
    suggested_data_type: DataType
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_new_code: bool
    reasoning: Optional[str] = None


class NewCodeSuggestion(BaseModel):
    """A proposed taxonomy entry; created only on explicit confirmation"""
    code: str
    display_name: str
    category: str
    data_type: DataType
    for_items: List[str] = Field(default_factory=list)


class SmartPassResult(BaseModel):
    extraction_id: UUID
    skipped: bool = False
    reason: Optional[str] = None
    suggestions: List[SmartPassSuggestion] = Field(default_factory=list)
    new_code_suggestions: List[NewCodeSuggestion] = Field(default_factory=list)
    items: List[CodifiedItem]
    stats: MappingStats
    usage: ResolverUsage = Field(default_factory=ResolverUsage)


class NewCodeSpec(BaseModel):
    """User-declared new taxonomy entry (the code string is the confirmed code)"""
    display_name: str = Field(..., min_length=1, max_length=DISPLAY_NAME_LENGTH)
    category: str = Field(..., min_length=1, max_length=CATEGORY_LENGTH)
    data_type: DataType


class ConfirmResult(BaseModel):
    extraction_id: UUID
    item_id: str
    item_code: str
    alias_id: int
    created_code_id: Optional[UUID] = None
    stats: MappingStats
    is_fully_confirmed: bool


class ConfirmAllResult(BaseModel):
    extraction_id: UUID
    confirmed_count: int
    aliases_created: int
    stats: MappingStats
    is_fully_confirmed: bool


class AddItemResult(BaseModel):
    extraction_id: UUID
    item_id: str
    mapping_status: MappingStatus
    alias_id: Optional[int] = None
    stats: MappingStats


class SingleSuggestion(BaseModel):
    item_name: str
    suggested_code: str
    suggested_code_id: Optional[UUID] = None
    display_name: str
    category: str
    data_type: DataType
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_new_code: bool
    match_type: MatchType
    reasoning: Optional[str] = None
    usage: Optional[ResolverUsage] = None

    class Config:
        json_schema_extra = {
            "example": {
                "item_name": "Site Acquisition Cost",
                "suggested_code": "costs.siteAcquisition",
                "display_name": "Site Acquisition",
                "category": "Site Costs",
                "data_type": "currency",
                "confidence": 0.82,
                "is_new_code": False,
                "match_type": "model",
                "reasoning": "Land purchase cost maps to the site acquisition code",
            }
        }


class ReviewQueue(BaseModel):
    extraction_id: UUID
    items: List[CodifiedItem]
    total: int
    stats: MappingStats


class Readiness(BaseModel):
    ready: bool
    reason: Optional[str] = None
    unconfirmed_count: int = 0


class ConfirmedItemRow(BaseModel):
    item_code: str
    original_name: str
    value: Optional[Union[Decimal, str]] = None
    data_type: DataType
    category: str


class ConfirmedItems(BaseModel):
    """Code -> value rows for downstream model population"""
    extraction_id: UUID
    items: List[ConfirmedItemRow]
    is_fully_confirmed: bool
    stats: MappingStats


# =============================================================================
# Taxonomy
# =============================================================================


class ItemCodeCreate(BaseModel):
    code: str = Field(
        ..., min_length=1, max_length=CODE_LENGTH, description="Dotted path, e.g. costs.siteAcquisition"
    )
    display_name: str = Field(..., min_length=1, max_length=DISPLAY_NAME_LENGTH)
    category: str = Field(..., min_length=1, max_length=CATEGORY_LENGTH)
    data_type: DataType
    is_system_default: bool = False


class ItemCodeUpdate(BaseModel):
    """Curator edit of a code; the code string itself is immutable"""
    display_name: Optional[str] = Field(None, min_length=1, max_length=DISPLAY_NAME_LENGTH)
    category: Optional[str] = Field(None, min_length=1, max_length=CATEGORY_LENGTH)
    data_type: Optional[DataType] = None


class CategoryChange(BaseModel):
    """Move several codes into one category"""
    code_ids: List[UUID] = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=CATEGORY_LENGTH)


class CategoryChangeResult(BaseModel):
    updated: int
    unchanged: int
    missing: List[UUID] = Field(default_factory=list)


class ItemCodeRead(BaseModel):
    id: UUID
    code: str
    display_name: str
    category: str
    data_type: DataType
    is_active: bool
    is_system_default: bool

    model_config = {"from_attributes": True}


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=CATEGORY_LENGTH)
    description: Optional[str] = None
    examples: List[str] = Field(default_factory=list)
    display_order: Optional[int] = None
    is_system: bool = False


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=CATEGORY_LENGTH)
    description: Optional[str] = None
    examples: Optional[List[str]] = None
    display_order: Optional[int] = None


class CategoryRead(BaseModel):
    id: UUID
    name: str
    normalized_name: str
    description: Optional[str] = None
    examples: List[str] = Field(default_factory=list)
    display_order: Optional[int] = None
    is_system: bool = False

    model_config = {"from_attributes": True}


class AliasRead(BaseModel):
    id: int
    alias_raw: str
    alias_normalized: str
    canonical_code: str
    canonical_code_id: UUID
    confidence: float
    source: AliasSource
    created_at: datetime

    model_config = {"from_attributes": True}
