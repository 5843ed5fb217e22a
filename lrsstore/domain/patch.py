from __future__ import annotations

from typing import Any


class _Marker:
    # Singleton markers for field presence; compared by identity only.
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Marker":
        return self

    def __deepcopy__(self, _memo: dict) -> "_Marker":
        return self


# Field not provided by the update: keep the prior stored value.
ABSENT: Any = _Marker("ABSENT")
# Field explicitly cleared by the update: reset to the field default.
CLEARED: Any = _Marker("CLEARED")


def is_supplied(value: Any) -> bool:
    return value is not ABSENT


def supplied_fields(patch: dict[str, Any]) -> dict[str, Any]:
    # Strip ABSENT entries so only explicit values (including CLEARED) remain.
    return {key: value for key, value in patch.items() if is_supplied(value)}
