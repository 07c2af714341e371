# env.py
from __future__ import annotations

from typing import Dict, Iterable, Iterator, Mapping, Optional


class EnvironmentContext(Mapping[str, str]):
    """
    Read-only mapping of environment variables for one stage invocation.

    Instances are never changed after construction; `overlay()` returns a new
    context.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = {str(k): str(v) for k, v in (data or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"EnvironmentContext({len(self._data)} vars)"

    def overlay(self, *layers: Optional[Mapping[str, str]]) -> EnvironmentContext:
        return compose([self, *layers])

    def to_dict(self) -> Dict[str, str]:
        """Fresh dict suitable for subprocess env=."""
        return dict(self._data)


def compose(layers: Iterable[Optional[Mapping[str, str]]]) -> EnvironmentContext:
    """
    Merge layers in order; later layers win on key collision.

    Values are coerced to str. None layers are ignored so callers can pass
    optional layers without filtering them first.
    """
    merged: Dict[str, str] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            merged[str(key)] = str(value)
    return EnvironmentContext(merged)
