# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""API routes outside the versioned surface."""

from mealplane.api.routes import health

__all__ = ["health"]
