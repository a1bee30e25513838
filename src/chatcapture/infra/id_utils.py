"""Local ids for captured messages the host sent without one.

A minted id only has to be unique within the session so the dedup ledger
can track the event, e.g. ``user_a8Kx3nQ9mP2r`` or ``assistant_L7wBd4Fj9Ks2``.
"""

import secrets
import string

_ID_CHARS = string.ascii_letters + string.digits
_SUFFIX_LENGTH = 12


def generate_id(role: str, length: int = _SUFFIX_LENGTH) -> str:
    """Return ``"{role}_{suffix}"`` with a random alphanumeric suffix."""
    return role + "_" + "".join(secrets.choice(_ID_CHARS) for _ in range(length))
