# src/sandboxcore/utils.py
"""
Shell quoting and identifier helpers shared by providers and git operations.
"""

import re
import secrets
import string

_ID_ALPHABET = string.ascii_lowercase + string.digits


def bash_quote(value: str) -> str:
    """
    Single-quote a value for bash.

    Embedded single quotes use the ``'"'"'`` idiom, so any string
    round-trips through ``bash -c``.

    >>> bash_quote("it's")
    '\\'it\\'"\\'"\\'s\\''
    """
    return "'" + value.replace("'", "'\"'\"'") + "'"


def safe_env_key(key: str) -> str:
    """
    Turn an arbitrary string into a valid shell variable name.

    Non-alphanumeric characters become ``_`` and a leading digit gets a
    ``_`` prefix.
    """
    safe = re.sub(r"[^A-Za-z0-9_]", "_", key)
    if safe and safe[0].isdigit():
        safe = "_" + safe
    return safe


def random_id(length: int = 6) -> str:
    """Return a random lowercase alphanumeric id."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))
