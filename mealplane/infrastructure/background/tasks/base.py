# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Base utilities for Dramatiq tasks.

Dramatiq workers run several threads. SQLAlchemy async engines are bound
to the event loop that created them, so each worker thread keeps one
persistent event loop and builds its own engine and services on it.
"""

import asyncio
import logging
import threading
from typing import Any, Coroutine, TypeVar

from mealplane.core.config import get_settings
from mealplane.domains.container import ControlPlaneServices, build_services
from mealplane.infrastructure.database.connection import create_engine, create_sessionmaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thread-local storage for event loops and services
_thread_local = threading.local()


def _get_thread_event_loop() -> asyncio.AbstractEventLoop:
    """Get or create a persistent event loop for the current thread.

    A new loop drops the thread's cached services, since their engine was
    bound to the previous loop.
    """
    loop = getattr(_thread_local, "event_loop", None)

    if loop is None or loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        _thread_local.event_loop = loop
        _thread_local.services = None

        logger.debug(
            "Created new event loop for thread %s",
            threading.current_thread().name,
        )

    return loop


def get_worker_services() -> ControlPlaneServices:
    """Services bound to the current worker thread's event loop."""
    services = getattr(_thread_local, "services", None)
    if services is None:
        settings = get_settings()
        engine = create_engine(
            settings.database.url,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
        )
        services = build_services(create_sessionmaker(engine), settings)
        _thread_local.services = services
    return services


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in the sync Dramatiq worker context.

    Example:
        @dramatiq.actor
        def my_task(progress_id: str):
            async def _process():
                services = get_worker_services()
                return await services.provisioning.execute_run(progress_id)
            return run_async(_process())
    """
    loop = _get_thread_event_loop()
    return loop.run_until_complete(coro)
