# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Mealplane - tenant lifecycle control plane for the school-meal platform."""

__version__ = "0.1.0"
