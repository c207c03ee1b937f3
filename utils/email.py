"""
Email helpers — display-safe masking.
"""

from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: str) -> bool:
    return bool(email) and isinstance(email, str) and bool(_EMAIL_RE.match(email))


def mask_email(email: str) -> str:
    """
    Keep the first character of the local part and the whole domain.

    ``john.doe@example.com`` → ``j****@example.com``

    Raises ValueError for anything that does not look like an address.
    """
    if not is_valid_email(email):
        raise ValueError("Invalid email format")
    local_part, domain = email.rsplit("@", 1)
    return f"{local_part[0]}****@{domain}"
