# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for the platform database.

Example:
    from mealplane.infrastructure.database import init_database, session_scope

    await init_database(settings)
    async with session_scope() as session:
        result = await session.execute(select(Tenant))
"""

from mealplane.infrastructure.database.connection import (
    DatabaseError,
    close_database,
    create_engine,
    create_sessionmaker,
    get_sessionmaker,
    init_database,
    session_scope,
)

__all__ = [
    "DatabaseError",
    "close_database",
    "create_engine",
    "create_sessionmaker",
    "get_sessionmaker",
    "init_database",
    "session_scope",
]
