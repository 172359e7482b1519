"""
Migration verification.

Re-reads a legacy document and checks that every store, category, product
and price it holds is present in the relational schema with equal values.
"""

import asyncio
from decimal import Decimal
from pathlib import Path
from typing import Union

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from storevault.core.exceptions import MigrationError
from storevault.migration.schema import categories, ensure_ledger, migration_ledger, products, store_products, stores
from storevault.migration.source import LegacyDocument, load_legacy_document
from storevault.models.migration import MigrationVerificationReport
from storevault.utils.logging import get_logger

logger = get_logger("migration.verifier")

_CENT = Decimal("0.01")


class MigrationVerifier:
    """Compares a legacy document with the migrated data."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_config(cls, config, engine=None) -> "MigrationVerifier":
        return cls(engine or create_engine(config.database_url, pool_pre_ping=True))

    async def verify(self, source_path: Union[str, Path]) -> MigrationVerificationReport:
        document = load_legacy_document(source_path)
        return await asyncio.to_thread(self.verify_document, document)

    def verify_document(self, document: LegacyDocument) -> MigrationVerificationReport:
        report = MigrationVerificationReport(source=document.source, malformed_records=len(document.malformed))
        try:
            ensure_ledger(self.engine)
            with self.engine.connect() as conn:
                store_names = set(conn.execute(select(stores.c.name)).scalars())
                category_names = set(conn.execute(select(categories.c.name)).scalars())
                product_names = set(conn.execute(select(products.c.name)).scalars())
                ledger_keys = set(conn.execute(select(migration_ledger.c.source_key)).scalars())
                price_rows = conn.execute(
                    select(stores.c.name.label("store"), products.c.name.label("product"),
                           store_products.c.unit, store_products.c.price)
                    .select_from(
                        store_products
                        .join(stores, stores.c.id == store_products.c.store_id)
                        .join(products, products.c.id == store_products.c.product_id)
                    )
                ).all()
        except SQLAlchemyError as e:
            raise MigrationError(f"Cannot read migrated data: {e}")

        prices = {(row.store, row.product, row.unit): Decimal(str(row.price)) for row in price_rows}

        for store in document.stores:
            self._check(report, store.name in store_names, f"Store '{store.name}' is missing")
        for category in document.categories:
            self._check(report, category.name in category_names, f"Category '{category.name}' is missing")

        for product in document.products:
            if not self._check(report, product.name in product_names, f"Product '{product.name}' is missing"):
                continue
            for price in product.prices:
                actual = prices.get((price.store, product.name, price.unit))
                expected = Decimal(str(price.price)).quantize(_CENT)
                if not self._check(
                    report, actual is not None,
                    f"Price for '{product.name}' at '{price.store}' ({price.unit}) is missing"
                ):
                    continue
                self._check(
                    report, actual.quantize(_CENT) == expected,
                    f"Price for '{product.name}' at '{price.store}' ({price.unit}) is {actual}, expected {expected}"
                )
                self._check(report, price.source_key in ledger_keys, f"No ledger entry for {price.source_key}")

        if report.success:
            logger.info(f"Migration verification passed: {report.checks_passed} checks")
        else:
            logger.warning(f"Migration verification found {len(report.issues)} issue(s)")
        return report

    @staticmethod
    def _check(report: MigrationVerificationReport, condition: bool, issue: str) -> bool:
        if condition:
            report.checks_passed += 1
        else:
            report.issues.append(issue)
        return condition
