"""
Item model - the data envelope flowing along connections.

An Item is {payload, tags}. Items travel as ordered lists per port; a
PortBundle maps port names to those lists and is both the input and the
output shape of a step.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


class Item(BaseModel):
    """
    One unit of data.

    Format: {"payload": <json>, "tags": {...}}
    """
    model_config = ConfigDict(extra="forbid")

    payload: Any = Field(None, description="JSON value carried by the item")
    tags: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")

    @classmethod
    def of(cls, payload: Any, **tags: Any) -> "Item":
        return cls(payload=payload, tags=tags)

    def json_payload(self) -> Dict[str, Any]:
        """Payload as a dict; non-object payloads are wrapped under 'value'."""
        if isinstance(self.payload, dict):
            return self.payload
        return {"value": self.payload}

    def clone(self) -> "Item":
        return Item(payload=copy.deepcopy(self.payload), tags=copy.deepcopy(self.tags))


PortBundle = Dict[str, List[Item]]


class InputBundle(Dict[str, List[Item]]):
    """
    PortBundle delivered to execute().

    Behaves as a plain port -> items mapping (all connections into a port
    concatenated in connection-declaration order) and additionally keeps
    the per-connection sequences, which merge-style steps need.
    """

    def __init__(self, sources: Optional[Mapping[str, Sequence[Sequence[Item]]]] = None) -> None:
        sources = sources or {}
        self._sources: Dict[str, List[List[Item]]] = {
            port: [list(seq) for seq in seqs] for port, seqs in sources.items()
        }
        super().__init__({
            port: [item for seq in seqs for item in seq]
            for port, seqs in self._sources.items()
        })

    @classmethod
    def from_bundle(cls, bundle: Mapping[str, Sequence[Item]]) -> "InputBundle":
        """One source per port."""
        return cls({port: [list(items)] for port, items in bundle.items()})

    def sources(self, port: str = "main") -> List[List[Item]]:
        """Per-connection sequences for a port, in connection-declaration order."""
        return [list(seq) for seq in self._sources.get(port, [])]

    def all_sources(self, ports: Optional[Iterable[str]] = None) -> List[List[Item]]:
        """Per-connection sequences across ports, ports in the given order."""
        result: List[List[Item]] = []
        for port in (ports if ports is not None else self._sources.keys()):
            result.extend(self.sources(port))
        return result

    def first(self) -> List[Item]:
        """Items of the first port that has any."""
        for items in self.values():
            if items:
                return list(items)
        return []

    @property
    def is_empty(self) -> bool:
        return not any(self.values())


def wrap_payloads(values: Iterable[Any]) -> List[Item]:
    """Wrap raw JSON values into Items. Item instances are kept as they are.

    Dicts are always payloads, even when shaped like {"payload": ..., "tags": ...}.
    """
    return [value if isinstance(value, Item) else Item(payload=value) for value in values]


def bundle_to_json(bundle: Mapping[str, Sequence[Item]]) -> Dict[str, List[Dict[str, Any]]]:
    return {port: [item.model_dump(mode="json") for item in items] for port, items in bundle.items()}


def bundle_from_json(data: Mapping[str, Sequence[Any]]) -> PortBundle:
    return {port: [Item.model_validate(item) for item in items] for port, items in data.items()}


def clone_bundle(bundle: Mapping[str, Sequence[Item]]) -> PortBundle:
    return {port: [item.clone() for item in items] for port, items in bundle.items()}


__all__ = [
    "InputBundle",
    "Item",
    "PortBundle",
    "bundle_from_json",
    "bundle_to_json",
    "clone_bundle",
    "wrap_payloads",
]
