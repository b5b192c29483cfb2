"""Lenient field coercion for vendor JSON, where any value may be missing or mistyped."""

from __future__ import annotations

from typing import Any


def opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def opt_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def as_int(value: Any, default: int = 0) -> int:
    parsed = opt_int(value)
    return default if parsed is None else parsed


def nested(value: Any, *keys: str) -> Any:
    """Walk ``keys`` through nested mappings, returning None on any gap."""
    current = value
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def mapping(value: Any, key: str) -> dict[str, Any]:
    """``value[key]`` if it is a mapping, else an empty dict."""
    child = nested(value, key)
    return child if isinstance(child, dict) else {}


def first(value: Any) -> dict[str, Any]:
    """First element of a list of mappings, else an empty dict."""
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}
