"""
Relational inventory schema.

SQLAlchemy Core mirrors of the inventory tables the migration writes to.
The inventory tables themselves are owned by the application's schema
migrations; only ``migration_ledger`` is created here, and only if absent.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Engine

metadata = MetaData()

# TEXT[] on PostgreSQL, JSON elsewhere (SQLite in tests).
StringList = JSON().with_variant(postgresql.ARRAY(Text), "postgresql")

stores = Table(
    "stores",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("slug", String(255)),
    Column("url", String(255)),
    Column("is_active", Boolean, nullable=False, server_default=true()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("slug", String(255)),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("slug", String(255)),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("synonyms", StringList),
    Column("common_brands", StringList),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

store_products = Table(
    "store_products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("store_id", Integer, ForeignKey("stores.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("unit", String(100), nullable=False, server_default="item"),
    Column("in_stock", Boolean, nullable=False, server_default=true()),
    Column("last_updated", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("store_id", "product_id", "unit", name="uq_store_products_store_product_unit"),
)

migration_ledger = Table(
    "migration_ledger",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("source_key", String(512), nullable=False, unique=True),
    Column("target_row_id", Integer, nullable=False),
    Column("migrated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)


def ensure_ledger(engine: Engine) -> None:
    """Create ``migration_ledger`` when it does not exist yet."""
    migration_ledger.create(engine, checkfirst=True)


def create_inventory_schema(engine: Engine) -> None:
    """Create every table; used for local databases and tests."""
    metadata.create_all(engine)
