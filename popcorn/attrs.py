"""Helpers producing structured logging attributes.

Every helper returns a mapping suitable for the ``extra`` argument of
:meth:`logging.Logger.log`, so several attributes can be merged with ``|``.
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from typing import Any

_CHARSET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_RANDOM_ID_LENGTH = 10


def err(error: BaseException) -> dict[str, str]:
    """Attribute ``err`` holding the error message."""
    return {"err": str(error)}


def named_err(key: str, error: BaseException | None) -> dict[str, str]:
    """Attribute ``key`` holding the error message, or nothing when there is no error."""
    if error is None:
        return {}
    return {key: str(error)}


def strings(key: str, values: Iterable[str]) -> dict[str, str]:
    """Attribute ``key`` holding the values as a bracketed, space separated list."""
    return {key: "[" + " ".join(values) + "]"}


def mod_id(module_id: str) -> dict[str, str]:
    """Attribute ``mod`` holding a module identifier."""
    return {"mod": module_id}


def random_id(key: str) -> dict[str, str]:
    """Attribute ``key`` holding a random alphanumeric identifier of ten characters."""
    return {key: "".join(random.choices(_CHARSET, k=_RANDOM_ID_LENGTH))}


def _type_name(value: Any) -> str:
    if value is None:
        return "nil"
    return type(value).__name__


def type_of(key: str, value: Any) -> dict[str, str]:
    """Attribute ``key`` holding the name of the value's type, ``nil`` for None."""
    return {key: _type_name(value)}


def chan(queue: Any) -> dict[str, str]:
    """Attribute ``chan`` describing a queue."""
    return named_chan("chan", queue)


def named_chan(key: str, queue: Any) -> dict[str, str]:
    """Attribute ``key`` describing a queue by its type and identity."""
    return {key: f"<{type(queue).__name__} at {id(queue):#x}>"}