"""Password strength rules applied at registration and password change."""

from __future__ import annotations

import re
from typing import NamedTuple

__all__ = ["MIN_UNIQUE_CHARACTERS", "PasswordCheck", "check_password"]

MIN_UNIQUE_CHARACTERS = 8

_CHARACTER_CLASSES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"\d"),
    re.compile(r"(_|[^\w\d])"),
)


class PasswordCheck(NamedTuple):
    ok: bool
    message: str | None = None


def check_password(
    password: str,
    confirmation: str,
    email: str,
    vanity: str | None = None,
    public_id: str | None = None,
) -> PasswordCheck:
    """Decide whether ``password`` is acceptable, with a user-displayable message when not."""

    if password != confirmation:
        return PasswordCheck(False, "Passwords did not match.")
    lowered = password.lower()
    if lowered in email.lower() or email.lower() in lowered:
        return PasswordCheck(False, "Password cannot match your account name, in whole or in part.")
    if vanity and (lowered in vanity.lower() or vanity.lower() in lowered):
        return PasswordCheck(False, "Password cannot match your vanity identifier, in whole or in part.")
    if public_id is not None and public_id.lower() == lowered:
        return PasswordCheck(False, "Password cannot be your public identifier.")
    if len(set(password)) < MIN_UNIQUE_CHARACTERS:
        return PasswordCheck(
            False,
            f"Password insufficiently complex, must contain at least {MIN_UNIQUE_CHARACTERS} unique characters.",
        )
    classes = sum(1 for pattern in _CHARACTER_CLASSES if pattern.search(password))
    if classes < 3:
        return PasswordCheck(
            False,
            "Password must contain at least 3 of the following: "
            "lower-case character, upper-case character, digit, and special character.",
        )
    return PasswordCheck(True)
