"""Structural comparison of decoded JSON values."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

_PRIMITIVE_KINDS = (bool, str, int, float)


@dataclass
class Diff:
    """A single changed value, addressed by a dotted JSON path."""

    json_path: str
    old: Any = None
    new: Any = None


@dataclass
class DiffList:
    """All differences found between two values."""

    diffs: list[Diff] = field(default_factory=list)


def compare(old_obj: Any, new_obj: Any) -> DiffList:
    """Compare two decoded JSON values and list every leaf that differs."""
    diffs: list[Diff] = []
    _compare(diffs, (), old_obj, new_obj)
    return DiffList(diffs=diffs)


def _push(diffs: list[Diff], path: tuple[str, ...], old: Any, new: Any) -> None:
    diffs.append(Diff(json_path=".".join(path), old=old, new=new))


def _primitive_kind(value: Any) -> type | None:
    # bool is tested before int so that True and 1 are different kinds.
    for kind in _PRIMITIVE_KINDS:
        if isinstance(value, kind):
            return kind
    return None


def _compare_primitive(old: Any, new: Any) -> tuple[bool, bool]:
    """Return (conclusive, equal) for values that need no recursion."""
    if old is None or new is None:
        return True, old is None and new is None
    kind = _primitive_kind(old)
    if kind is not None and kind is _primitive_kind(new):
        return True, old == new
    return False, False


def _compare(diffs: list[Diff], path: tuple[str, ...], old: Any, new: Any) -> None:
    conclusive, equal = _compare_primitive(old, new)
    if conclusive:
        if not equal:
            _push(diffs, path, old, new)
        return

    if isinstance(old, dict) and isinstance(new, dict):
        _compare_maps(diffs, path, old, new)
        return

    if isinstance(old, list) and isinstance(new, list):
        _compare_lists(diffs, path, old, new)
        return

    _push(diffs, path, old, new)


def _compare_maps(
    diffs: list[Diff], path: tuple[str, ...], old: dict[str, Any], new: dict[str, Any]
) -> None:
    for key in sorted(old.keys() | new.keys()):
        key_path = (*path, key)
        if key in old and key not in new:
            _push(diffs, key_path, old[key], None)
        elif key in new and key not in old:
            # An added key is recorded twice.
            _push(diffs, key_path, None, new[key])
            _push(diffs, key_path, None, new[key])
        else:
            _compare(diffs, key_path, old[key], new[key])


def _compare_lists(
    diffs: list[Diff], path: tuple[str, ...], old: list[Any], new: list[Any]
) -> None:
    for index in range(max(len(old), len(new))):
        old_value = old[index] if index < len(old) else None
        new_value = new[index] if index < len(new) else None
        _compare(diffs, (*path, f"[{index}]"), old_value, new_value)