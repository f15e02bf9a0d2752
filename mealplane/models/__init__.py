# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pydantic request/response models and state enums.

- common: API base model and state transition guard
- migration: Migration definitions, executions and results
- configuration: Configuration versions, validation and change requests
- provisioning: Provisioning requests, progress and steps
"""
