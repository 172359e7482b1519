"""
Legacy data migration engine.

Copies stores, categories, products and store prices from the legacy JSON
document into the relational schema. Every migrated price is recorded in
``migration_ledger``; re-running a migration skips ledgered prices, so
running the same file twice leaves the same end state as running it once.
"""

import asyncio
from datetime import datetime, UTC
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import create_engine, func, insert, select, text, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError

from storevault.core.exceptions import MalformedRecordError, MigrationAbortedError, MigrationError
from storevault.core.locks import OperationLock, operation_lock
from storevault.migration.schema import categories, ensure_ledger, migration_ledger, products, store_products, stores
from storevault.migration.source import LegacyDocument, load_legacy_document
from storevault.models.migration import (
    LegacyCategory,
    LegacyPrice,
    LegacyProduct,
    LegacyStore,
    MigrationLedgerEntry,
    MigrationSummary,
)
from storevault.utils.helpers import generate_operation_id, slugify
from storevault.utils.logging import audit_event, get_logger

logger = get_logger("migration.engine")


def merge_ordered(existing: Optional[Iterable[str]], incoming: Iterable[str]) -> List[str]:
    """Ordered set union: existing values first, new ones appended once."""
    merged: List[str] = []
    seen = set()
    for value in list(existing or []) + list(incoming or []):
        if value not in seen:
            seen.add(value)
            merged.append(value)
    return merged


def _is_connectivity_error(error: SQLAlchemyError) -> bool:
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class MigrationEngine:
    """Idempotent legacy-to-relational migration."""

    def __init__(self, engine: Engine, lock: Optional[OperationLock] = None):
        self.engine = engine
        self.lock = lock or operation_lock("migration")

    @classmethod
    def from_config(cls, config, engine: Optional[Engine] = None) -> "MigrationEngine":
        return cls(engine or create_engine(config.database_url, pool_pre_ping=True))

    async def migrate(self, source_path: Union[str, Path]) -> MigrationSummary:
        """
        Migrate one legacy file.

        Args:
            source_path: Path to the legacy JSON document

        Returns:
            Totals of the run, including skipped records and their reasons

        Raises:
            ConflictError: Another migration is running
            MigrationSourceError: The file cannot be read
            MigrationAbortedError: Database connectivity was lost
        """
        with self.lock.held():
            document = load_legacy_document(source_path)
            return await asyncio.to_thread(self.migrate_document, document)

    def migrate_document(self, document: LegacyDocument) -> MigrationSummary:
        """Migrate an already-parsed document (blocking)."""
        operation_id = generate_operation_id("migration")
        summary = MigrationSummary(source=document.source)
        for record in document.malformed:
            summary.skip(record.kind, record.key, record.reason)

        logger.info(
            f"Migrating {document.source}: {len(document.stores)} stores, "
            f"{len(document.categories)} categories, {len(document.products)} products, "
            f"{document.price_count} prices"
        )

        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            ensure_ledger(self.engine)

            store_ids = self._migrate_stores(document.stores, summary)
            category_ids = self._migrate_categories(document.categories, summary)

            for product in document.products:
                product_id = self._migrate_product(product, category_ids, summary)
                if product_id is None:
                    continue
                for price in product.prices:
                    self._migrate_price(price, product_id, store_ids, summary)

        except SQLAlchemyError as e:
            summary.finished_at = datetime.now(UTC)
            details = {"summary": summary.model_dump(mode="json", by_alias=True)}
            if _is_connectivity_error(e):
                logger.error(f"Migration {operation_id} aborted: database connection lost")
                raise MigrationAbortedError(
                    f"Migration aborted, database connection lost: {e.__class__.__name__}",
                    details=details,
                )
            raise MigrationError(f"Migration failed: {e}", details=details)

        summary.finished_at = datetime.now(UTC)
        logger.info(
            f"Migration finished: {summary.prices_upserted} prices upserted, "
            f"{summary.already_migrated} already migrated, {summary.skipped} skipped"
        )
        audit_event(
            "migration_completed",
            operation_id,
            source=document.source,
            prices_upserted=summary.prices_upserted,
            already_migrated=summary.already_migrated,
            skipped=summary.skipped,
        )
        return summary

    def _record(self, kind: str, key: str, summary: MigrationSummary, step, *args):
        """Run one record in its own transaction; data errors skip the record."""
        try:
            with self.engine.begin() as conn:
                return step(conn, *args)
        except (IntegrityError, DataError) as e:
            if e.connection_invalidated:
                raise
            reason = str(e.orig) if e.orig is not None else str(e)
            logger.warning(f"Skipping {kind} '{key}': {reason}")
            summary.skip(kind, key, reason)
            return None
        except MalformedRecordError as e:
            logger.warning(f"Skipping {e.kind} '{e.key}': {e.message}")
            summary.skip(e.kind, e.key or key, e.message)
            return None

    def _migrate_stores(self, legacy_stores: List[LegacyStore], summary: MigrationSummary) -> Dict[str, int]:
        store_ids: Dict[str, int] = {}
        for store in legacy_stores:
            outcome = self._record("store", store.name, summary, self._upsert_store, store)
            if outcome is None:
                continue
            store_id, created = outcome
            store_ids[store.name] = store_id
            summary.stores_upserted += 1
            summary.stores_created += int(created)
        return store_ids

    def _upsert_store(self, conn: Connection, store: LegacyStore) -> Tuple[int, bool]:
        row = conn.execute(select(stores.c.id).where(stores.c.name == store.name)).first()
        if row is not None:
            return row.id, False
        result = conn.execute(insert(stores).values(
            name=store.name,
            slug=slugify(store.name),
            url=store.url,
            is_active=True,
        ))
        return result.inserted_primary_key[0], True

    def _migrate_categories(
        self,
        legacy_categories: List[LegacyCategory],
        summary: MigrationSummary
    ) -> Dict[str, int]:
        category_ids: Dict[str, int] = {}
        for category in legacy_categories:
            outcome = self._record("category", category.slug, summary, self._upsert_category, category)
            if outcome is None:
                continue
            category_id, created = outcome
            category_ids[category.slug] = category_id
            summary.categories_upserted += 1
            summary.categories_created += int(created)
        return category_ids

    def _upsert_category(self, conn: Connection, category: LegacyCategory) -> Tuple[int, bool]:
        row = conn.execute(select(categories.c.id).where(categories.c.name == category.name)).first()
        if row is not None:
            return row.id, False
        result = conn.execute(insert(categories).values(name=category.name, slug=category.slug))
        return result.inserted_primary_key[0], True

    def _migrate_product(
        self,
        product: LegacyProduct,
        category_ids: Dict[str, int],
        summary: MigrationSummary
    ) -> Optional[int]:
        outcome = self._record("product", product.key, summary, self._upsert_product, product, category_ids)
        if outcome is None:
            return None
        product_id, created, merged = outcome
        summary.products_upserted += 1
        summary.products_created += int(created)
        summary.products_merged += int(merged)
        return product_id

    def _upsert_product(
        self,
        conn: Connection,
        product: LegacyProduct,
        category_ids: Dict[str, int]
    ) -> Tuple[int, bool, bool]:
        row = conn.execute(
            select(products.c.id, products.c.synonyms, products.c.common_brands)
            .where(products.c.name == product.name)
        ).first()

        if row is None:
            category_id = category_ids.get(product.category) if product.category else None
            if product.category and category_id is None:
                logger.warning(f"Product '{product.key}' references unknown category '{product.category}'")
            result = conn.execute(insert(products).values(
                name=product.name,
                slug=product.key,
                category_id=category_id,
                synonyms=merge_ordered([], product.synonyms),
                common_brands=merge_ordered([], product.brands),
                is_active=True,
            ))
            return result.inserted_primary_key[0], True, False

        synonyms = merge_ordered(row.synonyms, product.synonyms)
        brands = merge_ordered(row.common_brands, product.brands)
        if synonyms == list(row.synonyms or []) and brands == list(row.common_brands or []):
            return row.id, False, False

        conn.execute(
            update(products)
            .where(products.c.id == row.id)
            .values(synonyms=synonyms, common_brands=brands, updated_at=datetime.now(UTC))
        )
        return row.id, False, True

    def _find_store_id(self, conn: Connection, name: str, store_ids: Dict[str, int]) -> Optional[int]:
        if name in store_ids:
            return store_ids[name]
        row = conn.execute(select(stores.c.id).where(stores.c.name == name)).first()
        return row.id if row is not None else None

    def _migrate_price(
        self,
        price: LegacyPrice,
        product_id: int,
        store_ids: Dict[str, int],
        summary: MigrationSummary
    ) -> None:
        outcome = self._record("price", price.source_key, summary, self._upsert_price, price, product_id, store_ids)
        if outcome is None:
            return
        _entry, migrated = outcome
        if migrated:
            summary.prices_upserted += 1
        else:
            summary.already_migrated += 1

    def _upsert_price(
        self,
        conn: Connection,
        price: LegacyPrice,
        product_id: int,
        store_ids: Dict[str, int]
    ) -> Tuple[MigrationLedgerEntry, bool]:
        """
        Write one price and its ledger row.

        Returns:
            The ledger entry, and False when it was already ledgered

        Raises:
            MalformedRecordError: The price names an unknown store
        """
        ledgered = conn.execute(
            select(migration_ledger.c.source_key, migration_ledger.c.target_row_id, migration_ledger.c.migrated_at)
            .where(migration_ledger.c.source_key == price.source_key)
        ).first()
        if ledgered is not None:
            return MigrationLedgerEntry(
                source_key=ledgered.source_key,
                target_row_id=ledgered.target_row_id,
                migrated_at=ledgered.migrated_at,
            ), False

        store_id = self._find_store_id(conn, price.store, store_ids)
        if store_id is None:
            raise MalformedRecordError(f"unknown store '{price.store}'", kind="price", key=price.source_key)

        values = {
            "price": Decimal(str(price.price)),
            "in_stock": price.in_stock,
            "last_updated": price.last_updated or datetime.now(UTC),
        }
        existing = conn.execute(
            select(store_products.c.id).where(
                store_products.c.store_id == store_id,
                store_products.c.product_id == product_id,
                store_products.c.unit == price.unit,
            )
        ).first()

        if existing is not None:
            row_id = existing.id
            conn.execute(update(store_products).where(store_products.c.id == row_id).values(**values))
        else:
            result = conn.execute(insert(store_products).values(
                store_id=store_id,
                product_id=product_id,
                unit=price.unit,
                **values,
            ))
            row_id = result.inserted_primary_key[0]

        entry = MigrationLedgerEntry(source_key=price.source_key, target_row_id=row_id)
        conn.execute(insert(migration_ledger).values(
            source_key=entry.source_key,
            target_row_id=entry.target_row_id,
            migrated_at=entry.migrated_at,
        ))
        return entry, True

    def ledger_size(self) -> int:
        """Number of ledgered prices."""
        ensure_ledger(self.engine)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(migration_ledger)).scalar_one()
