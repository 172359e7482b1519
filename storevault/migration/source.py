"""
Legacy flat-file reader.

Parses the legacy ``kosher-prices.json`` document into validated store,
category, product and price records. Records that fail validation are
collected with a reason instead of aborting the whole read.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Union

from pydantic import ValidationError

from storevault.core.exceptions import MalformedRecordError, MigrationSourceError
from storevault.models.migration import (
    LegacyCategory,
    LegacyPrice,
    LegacyProduct,
    LegacyStore,
    SkippedRecord,
)
from storevault.utils.logging import get_logger

logger = get_logger("migration.source")


@dataclass
class LegacyDocument:
    """Validated content of one legacy file."""
    source: str
    stores: List[LegacyStore] = field(default_factory=list)
    categories: List[LegacyCategory] = field(default_factory=list)
    products: List[LegacyProduct] = field(default_factory=list)
    malformed: List[SkippedRecord] = field(default_factory=list)

    def iter_prices(self) -> Iterator[LegacyPrice]:
        for product in self.products:
            yield from product.prices

    @property
    def price_count(self) -> int:
        return sum(1 for _ in self.iter_prices())

    def skip(self, error: MalformedRecordError) -> None:
        self.malformed.append(SkippedRecord(kind=error.kind, key=error.key or "", reason=error.message))


def _reason(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]


def _build(model, kind: str, record_key: str, **values):
    """
    Validate one record.

    Raises:
        MalformedRecordError: With the first validation failure as the reason
    """
    try:
        return model(**values)
    except ValidationError as e:
        raise MalformedRecordError(_reason(e), kind=kind, key=record_key) from e


def _as_mapping(document: Dict[str, Any], section: str) -> Dict[str, Any]:
    value = document.get(section) or {}
    if not isinstance(value, dict):
        raise MigrationSourceError(f"Section '{section}' must be an object")
    return value


def _parse_price(store_name: str, product_key: str, entry: Any) -> LegacyPrice:
    if not isinstance(entry, dict):
        raise MalformedRecordError(
            "price entry must be an object", kind="price", key=f"{store_name}::{product_key}"
        )
    unit = entry.get("unit") or "item"
    return _build(
        LegacyPrice, "price", f"{store_name}::{product_key}::{unit}",
        store=store_name,
        product_key=product_key,
        price=entry.get("price"),
        unit=unit,
        in_stock=entry.get("inStock", True),
        last_updated=entry.get("lastUpdated"),
    )


def _parse_prices(product_key: str, raw_prices: Any, document: LegacyDocument) -> List[LegacyPrice]:
    prices: List[LegacyPrice] = []
    if raw_prices is None:
        return prices
    if not isinstance(raw_prices, dict):
        document.skip(MalformedRecordError(
            "prices must be an object keyed by store", kind="price", key=product_key
        ))
        return prices

    for store_name, entries in raw_prices.items():
        if not isinstance(entries, list):
            entries = [entries]

        for entry in entries:
            try:
                prices.append(_parse_price(store_name, product_key, entry))
            except MalformedRecordError as e:
                document.skip(e)
    return prices


def parse_legacy_document(data: Any, source: str = "<memory>") -> LegacyDocument:
    """
    Validate an already-decoded legacy document.

    Raises:
        MigrationSourceError: The document is not an object or a section has the wrong shape
    """
    if not isinstance(data, dict):
        raise MigrationSourceError(f"Legacy document {source} must be a JSON object")

    document = LegacyDocument(source=source)

    for name, raw in _as_mapping(data, "stores").items():
        raw = raw if isinstance(raw, dict) else {}
        try:
            document.stores.append(_build(LegacyStore, "store", name, name=name, url=raw.get("url")))
        except MalformedRecordError as e:
            document.skip(e)

    for slug, raw in _as_mapping(data, "categories").items():
        raw = raw if isinstance(raw, dict) else {}
        try:
            document.categories.append(
                _build(LegacyCategory, "category", slug, slug=slug, name=raw.get("name") or "")
            )
        except MalformedRecordError as e:
            document.skip(e)

    for key, raw in _as_mapping(data, "products").items():
        try:
            if not isinstance(raw, dict):
                raise MalformedRecordError("product must be an object", kind="product", key=key)
            product = _build(
                LegacyProduct, "product", key,
                key=key,
                name=raw.get("displayName") or raw.get("name") or "",
                category=raw.get("category"),
                synonyms=raw.get("synonyms"),
                brands=raw.get("commonBrands"),
            )
        except MalformedRecordError as e:
            document.skip(e)
            continue
        product.prices = _parse_prices(key, raw.get("prices"), document)
        document.products.append(product)

    if document.malformed:
        logger.warning(f"{len(document.malformed)} malformed record(s) in {source}")
    return document


def load_legacy_document(path: Union[str, Path]) -> LegacyDocument:
    """
    Read and validate a legacy JSON file.

    Raises:
        MigrationSourceError: The file is missing or is not valid JSON
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise MigrationSourceError(f"Legacy file not found: {path}", details={"source": str(path)})
    except (OSError, json.JSONDecodeError) as e:
        raise MigrationSourceError(f"Cannot read legacy file {path}: {e}", details={"source": str(path)})

    return parse_legacy_document(data, source=str(path))
