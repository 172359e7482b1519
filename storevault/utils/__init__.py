"""
Utilities module for storevault.

This module contains utility functions and logging helpers
used throughout the application.
"""

from storevault.utils.helpers import (
    generate_operation_id,
    calculate_file_checksum,
    format_bytes,
    format_duration,
    slugify,
    tail_text,
    load_config_file,
)
from storevault.utils.logging import (
    setup_logging,
    get_logger,
    audit_event,
)

__all__ = [
    # Helper functions
    "generate_operation_id",
    "calculate_file_checksum",
    "format_bytes",
    "format_duration",
    "slugify",
    "tail_text",
    "load_config_file",
    # Logging utilities
    "setup_logging",
    "get_logger",
    "audit_event",
]
