# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant directory and admin account helpers."""

from mealplane.domains.directory.passwords import PasswordHasher, check_password
from mealplane.domains.directory.service import TenantDirectory

__all__ = ["PasswordHasher", "TenantDirectory", "check_password"]
