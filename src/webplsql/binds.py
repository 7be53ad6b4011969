"""Bind parameter variant shared by the gateway and its database adapter."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List


class Direction(enum.Enum):
    IN = "in"
    OUT = "out"
    INOUT = "inout"


class BindKind(enum.Enum):
    STRING = "string"
    NUMBER = "number"
    BLOB = "blob"


@dataclass(frozen=True)
class Bind:
    """One bind parameter.

    ``array`` selects the PL/SQL index-by table form; ``max_size`` and
    ``max_array_size`` size OUT buffers.
    """

    direction: Direction
    kind: BindKind
    value: Any = None
    array: bool = False
    max_size: int | None = None
    max_array_size: int | None = None

    @classmethod
    def string(cls, value: str | None) -> "Bind":
        return cls(Direction.IN, BindKind.STRING, value)

    @classmethod
    def string_table(cls, values: Iterable[str]) -> "Bind":
        return cls(Direction.IN, BindKind.STRING, list(values), array=True)

    @classmethod
    def number(cls, value: int | float | None) -> "Bind":
        return cls(Direction.IN, BindKind.NUMBER, value)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "dir": self.direction.value,
            "type": f"{self.kind.value}[]" if self.array else self.kind.value,
        }
        if self.direction is not Direction.OUT:
            data["val"] = self.value if isinstance(self.value, (str, int, float, list, type(None))) else repr(self.value)
        return data


BindMap = Dict[str, Bind]


def describe_binds(binds: BindMap | None) -> List[Dict[str, Any]]:
    if not binds:
        return []
    return [{"name": name, **bind.to_dict()} for name, bind in binds.items()]
