# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Cross-cutting utilities.

- logging: Structured logging with structlog
- datetime: Timezone-aware datetime operations
"""

from mealplane.utils.datetime import (
    elapsed_ms,
    ensure_utc,
    format_iso,
    hours_from_now,
    parse_iso,
    utc_now,
)
from mealplane.utils.logging import bind_context, clear_context, setup_logging

__all__ = [
    # Logging
    "setup_logging",
    "bind_context",
    "clear_context",
    # Datetime
    "utc_now",
    "ensure_utc",
    "hours_from_now",
    "elapsed_ms",
    "format_iso",
    "parse_iso",
]
