# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Admin password hashing with bcrypt.

Example:
    >>> hasher = PasswordHasher(rounds=4)
    >>> hashed = hasher.hash("escola-2025")
    >>> hasher.verify("escola-2025", hashed)
    True
"""

import logging

import bcrypt

from mealplane.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class PasswordHasher:
    """bcrypt hashing for user accounts created by provisioning.

    Attributes:
        _rounds: bcrypt cost factor.
    """

    def __init__(self, rounds: int = 12) -> None:
        """Initialize the hasher.

        Args:
            rounds: bcrypt cost factor. Tests use a low value.
        """
        self._rounds = rounds

    def hash(self, password: str) -> str:
        """Hash a password.

        Raises:
            ValidationError: If the password is shorter than the minimum.
        """
        check_password(password)
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        """Check a password against a stored hash.

        Returns:
            True if the password matches, False otherwise (including
            malformed hashes).
        """
        if not password or not password_hash:
            return False

        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError as e:
            logger.warning("Password verification failed: %s", str(e))
            return False


def check_password(password: str | None) -> None:
    """Reject passwords that are missing or too short.

    Raises:
        ValidationError: If the password does not meet the minimum length.
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must have at least {MIN_PASSWORD_LENGTH} characters",
            {"field": "password"},
        )
