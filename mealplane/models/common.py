# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Common model helpers.

APIModel is the base for every request and response schema. Fields are
snake_case in Python and camelCase on the wire; both spellings are
accepted on input.
"""

from collections.abc import Mapping
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from mealplane.core.exceptions import InvalidRequestState

StateT = TypeVar("StateT", bound=Enum)


class APIModel(BaseModel):
    """Base model with camelCase aliases and ORM attribute loading."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def guard_transition(
    current: StateT,
    target: StateT,
    allowed: Mapping[StateT, frozenset[StateT]],
    subject: str,
) -> StateT:
    """Reject a state change that the state machine does not allow.

    Args:
        current: Current state.
        target: Requested state.
        allowed: Allowed targets per state.
        subject: Entity description used in the error message.

    Returns:
        The target state.

    Raises:
        InvalidRequestState: If the transition is not allowed.
    """
    if target not in allowed.get(current, frozenset()):
        raise InvalidRequestState(
            f"{subject} cannot move from {current.value} to {target.value}",
            {"current": current.value, "target": target.value},
        )
    return target
