"""
Tagged-union value types held by the in-process store emulation.

Every key maps to a StoreEntry whose value is exactly one of
ScalarValue | HashValue | SetValue | ListValue | SortedSetValue,
plus an optional absolute expiry instant (epoch seconds).
"""

from dataclasses import dataclass, field
from typing import Union


@dataclass
class ScalarValue:
    """Plain string value (the remote store's 'string' type)."""

    data: str
    kind = "string"


@dataclass
class HashValue:
    """Field -> value mapping."""

    fields: dict[str, str] = field(default_factory=dict)
    kind = "hash"


@dataclass
class SetValue:
    """Unordered collection of unique members."""

    members: set[str] = field(default_factory=set)
    kind = "set"


@dataclass
class ListValue:
    """Ordered list; index 0 is the head (left)."""

    items: list[str] = field(default_factory=list)
    kind = "list"


@dataclass
class SortedSetValue:
    """Members with float scores, ordered by (score, member)."""

    scores: dict[str, float] = field(default_factory=dict)
    kind = "zset"

    def ordered(self) -> list[tuple[str, float]]:
        return sorted(self.scores.items(), key=lambda item: (item[1], item[0]))


StoreValue = Union[ScalarValue, HashValue, SetValue, ListValue, SortedSetValue]


@dataclass
class StoreEntry:
    """
    A key's value plus optional absolute expiry.

    An entry whose expiry is in the past is logically absent.
    """

    value: StoreValue
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_empty(self) -> bool:
        """Collections that become empty are deleted, like the remote store does."""
        value = self.value
        if isinstance(value, ScalarValue):
            return False
        if isinstance(value, HashValue):
            return not value.fields
        if isinstance(value, SetValue):
            return not value.members
        if isinstance(value, ListValue):
            return not value.items
        if isinstance(value, SortedSetValue):
            return not value.scores
        raise TypeError(f"Unknown store value: {type(value).__name__}")
