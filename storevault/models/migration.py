"""
Migration models for storevault.

Pydantic models describing legacy records, ledger entries and the
summary returned by a migration run.
"""

from datetime import datetime, UTC
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LegacyStore(BaseModel):
    """A store entry from the legacy flat file."""
    name: str = Field(..., min_length=1, max_length=255)
    url: Optional[str] = Field(default=None, max_length=255)


class LegacyCategory(BaseModel):
    """A category entry from the legacy flat file."""
    slug: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)


class LegacyPrice(BaseModel):
    """One store price for one product unit."""
    store: str = Field(..., min_length=1)
    product_key: str = Field(..., min_length=1)
    price: float
    unit: str = Field(default="item", min_length=1, max_length=100)
    in_stock: bool = True
    last_updated: Optional[datetime] = None

    @field_validator('price', mode='before')
    @classmethod
    def price_must_be_number(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError('price must be a number')
        if v < 0:
            raise ValueError('price must not be negative')
        return v

    @property
    def source_key(self) -> str:
        """Ledger key: store + product + unit."""
        return f"{self.store}::{self.product_key}::{self.unit}"


class LegacyProduct(BaseModel):
    """A product entry from the legacy flat file, with its prices."""
    key: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    category: Optional[str] = None
    synonyms: List[str] = Field(default_factory=list)
    brands: List[str] = Field(default_factory=list)
    prices: List[LegacyPrice] = Field(default_factory=list)

    @field_validator('synonyms', 'brands', mode='before')
    @classmethod
    def none_is_empty(cls, v):
        return [] if v is None else v


class SkippedRecord(_CamelModel):
    """A legacy record that was not migrated, and why."""
    kind: str
    key: str
    reason: str


class MigrationLedgerEntry(_CamelModel):
    """Idempotence record of one migrated price."""
    source_key: str
    target_row_id: int
    migrated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class MigrationSummary(_CamelModel):
    """Totals of a migration run."""
    source: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None
    stores_upserted: int = 0
    stores_created: int = 0
    categories_upserted: int = 0
    categories_created: int = 0
    products_upserted: int = 0
    products_created: int = 0
    products_merged: int = 0
    prices_upserted: int = 0
    already_migrated: int = 0
    skipped: int = 0
    skipped_records: List[SkippedRecord] = Field(default_factory=list)

    def skip(self, kind: str, key: str, reason: str) -> None:
        self.skipped += 1
        self.skipped_records.append(SkippedRecord(kind=kind, key=key, reason=reason))


class MigrationVerificationReport(_CamelModel):
    """Result of comparing a legacy document with the relational data."""
    source: str
    checks_passed: int = 0
    malformed_records: int = 0
    issues: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        return not self.issues
