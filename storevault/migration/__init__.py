"""
Legacy data migration for storevault.

Reads the legacy JSON inventory file and upserts it idempotently into the
relational schema, with a ledger of migrated prices.
"""

from storevault.migration.engine import MigrationEngine, merge_ordered
from storevault.migration.source import LegacyDocument, load_legacy_document, parse_legacy_document
from storevault.migration.verifier import MigrationVerifier

__all__ = [
    "MigrationEngine",
    "MigrationVerifier",
    "LegacyDocument",
    "load_legacy_document",
    "parse_legacy_document",
    "merge_ordered",
]
