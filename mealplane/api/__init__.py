# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""HTTP API for the control plane.

Usage:
    uvicorn mealplane.api.app:create_app --factory
"""
