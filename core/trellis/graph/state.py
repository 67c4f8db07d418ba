"""
State Container - The versioned key/value map that flows through a graph.

One State is created per execution and mutated in place by every node.
It is only copied at explicit isolation points:
- parallel fork (each branch gets a clone, deltas merge back at the join)
- IsolatedClone subgraphs (only mapped keys are copied in)

Absence is a first-class outcome: ``state.get(key)`` returns the MISSING
sentinel rather than raising, so routers and nodes can branch on it.
``state.require(key)`` raises the typed MissingKeyError.
"""

import copy
import logging
import numbers
import uuid
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from trellis.graph.errors import MissingKeyError, StateMergeError

logger = logging.getLogger(__name__)


class Missing:
    """Sentinel type for an absent state key."""

    _instance: "Missing | None" = None

    def __new__(cls) -> "Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "<MISSING>"

    def __copy__(self) -> "Missing":
        return self

    def __deepcopy__(self, memo: dict) -> "Missing":
        return self


MISSING = Missing()


class ConflictPolicy(StrEnum):
    """How to resolve a key present on both sides of a merge."""

    PREFER_EXISTING = "prefer_existing"
    PREFER_INCOMING = "prefer_incoming"
    COMBINE = "combine"


class StateSnapshot(BaseModel):
    """Immutable point-in-time copy of a State (used by checkpoints)."""

    state_id: str
    version: int
    created_at: datetime
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Number) and not isinstance(value, bool)


def combine_values(key: str, existing: Any, incoming: Any) -> Any:
    """Combine two values written to the same key (COMBINE policy)."""
    if isinstance(existing, dict) and isinstance(incoming, dict):
        combined = dict(existing)
        for sub_key, value in incoming.items():
            if sub_key in combined:
                combined[sub_key] = combine_values(f"{key}.{sub_key}", combined[sub_key], value)
            else:
                combined[sub_key] = value
        return combined

    if isinstance(existing, list) and isinstance(incoming, list):
        return existing + incoming

    if isinstance(existing, set) and isinstance(incoming, set):
        return existing | incoming

    if _is_number(existing) and _is_number(incoming):
        return existing + incoming

    if existing == incoming:
        return incoming

    logger.warning(
        f"Cannot combine incompatible values for key '{key}': "
        f"{type(existing).__name__} vs {type(incoming).__name__}, using incoming value"
    )
    return incoming


def combine_from_base(key: str, current: Any, base: Any, value: Any) -> Any:
    """
    Fold one branch's ``value`` into ``current`` under COMBINE.

    ``base`` is the value the branch started from, so only what the branch
    added is combined: the appended list tail, the set additions, the numeric
    difference, the sub-keys it changed. A value that does not extend the
    base replaces it.
    """
    if base is MISSING:
        return value if current is MISSING else combine_values(key, current, value)

    if isinstance(base, dict) and isinstance(value, dict) and isinstance(current, dict):
        combined = dict(current)
        for sub_key, sub_value in value.items():
            sub_base = base.get(sub_key, MISSING)
            if sub_value == sub_base:
                continue
            combined[sub_key] = combine_from_base(
                f"{key}.{sub_key}", combined.get(sub_key, MISSING), sub_base, sub_value
            )
        return combined

    if (
        isinstance(base, list)
        and isinstance(value, list)
        and isinstance(current, list)
        and value[: len(base)] == base
    ):
        return current + value[len(base) :]

    if isinstance(base, set) and isinstance(value, set) and isinstance(current, set):
        return current | (value - base)

    if _is_number(base) and _is_number(value) and _is_number(current):
        return current + (value - base)

    return value


class State:
    """
    Ordered, versioned key/value map with metadata.

    Example:
        state = State({"age": 17}, metadata={"source": "api"})
        state.set("adult", False)        # version -> 1
        state.get("missing") is MISSING  # True
        state.require("missing")         # raises MissingKeyError
    """

    def __init__(
        self,
        data: Mapping[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        state_id: str | None = None,
        created_at: datetime | None = None,
        version: int = 0,
    ):
        self.state_id = state_id or uuid.uuid4().hex
        self.created_at = created_at or datetime.now(UTC)
        self.metadata: dict[str, Any] = dict(metadata or {})
        self._version = version
        self._data: dict[str, Any] = {}
        # Keys written since construction/clone, in first-write order
        self._written: dict[str, None] = {}
        for key, value in (data or {}).items():
            self._check_key(key)
            self._data[key] = value

    # === STORAGE PRIMITIVES (overridden by scoped views) ===

    def _read(self, key: str) -> Any:
        return self._data.get(key, MISSING)

    def _write(self, key: str, value: Any) -> None:
        self._data[key] = value

    def _remove(self, key: str) -> bool:
        return self._data.pop(key, MISSING) is not MISSING

    def _visible(self) -> dict[str, Any]:
        return dict(self._data)

    @staticmethod
    def _check_key(key: Any) -> None:
        if not isinstance(key, str):
            raise TypeError(f"State keys must be strings, got {type(key).__name__}")

    # === PUBLIC API ===

    @property
    def version(self) -> int:
        """Monotonically increasing write counter."""
        return self._version

    def get(self, key: str, default: Any = MISSING) -> Any:
        """Return the value for key, or ``default`` (MISSING) when absent."""
        value = self._read(key)
        return default if value is MISSING else value

    def require(self, key: str) -> Any:
        """Return the value for key, raising MissingKeyError when absent."""
        value = self._read(key)
        if value is MISSING:
            raise MissingKeyError(key)
        return value

    def set(self, key: str, value: Any) -> None:
        """Create or overwrite a key and bump the version."""
        self._check_key(key)
        self._write(key, value)
        self._written[key] = None
        self._version += 1

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        removed = self._remove(key)
        if removed:
            self._written.pop(key, None)
            self._version += 1
        return removed

    def update(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def keys(self) -> list[str]:
        return list(self._visible().keys())

    def items(self) -> list[tuple[str, Any]]:
        return list(self._visible().items())

    def to_dict(self) -> dict[str, Any]:
        """Shallow copy of the visible data."""
        return self._visible()

    def written_keys(self) -> list[str]:
        """Keys written since this state was constructed or cloned."""
        return list(self._written)

    def delta(self) -> dict[str, Any]:
        """Values of the keys written since construction or clone."""
        return {key: self._read(key) for key in self._written if self._read(key) is not MISSING}

    def snapshot(self) -> StateSnapshot:
        """Deep, immutable copy for checkpointing."""
        return StateSnapshot(
            state_id=self.state_id,
            version=self.version,
            created_at=self.created_at,
            data=copy.deepcopy(self._visible()),
            metadata=copy.deepcopy(self.metadata),
        )

    @classmethod
    def from_snapshot(cls, snapshot: StateSnapshot) -> "State":
        """Rebuild a State with the snapshot's identity and version."""
        return cls(
            data=copy.deepcopy(snapshot.data),
            metadata=copy.deepcopy(snapshot.metadata),
            state_id=snapshot.state_id,
            created_at=snapshot.created_at,
            version=snapshot.version,
        )

    def clone(self) -> "State":
        """
        Deep copy with a fresh identity and an empty write log.

        Only used at isolation points (parallel fork, IsolatedClone subgraphs).
        """
        metadata = copy.deepcopy(self.metadata)
        metadata["cloned_from"] = self.state_id
        return State(
            data=copy.deepcopy(self._visible()),
            metadata=metadata,
            version=self.version,
        )

    def merge(
        self,
        other: "State | Mapping[str, Any]",
        policy: ConflictPolicy = ConflictPolicy.PREFER_INCOMING,
    ) -> "State":
        """
        Merge another state (or mapping) into this one, in place.

        A conflict is a key present on both sides with unequal values;
        ``policy`` decides the outcome. Returns self.
        """
        if isinstance(other, State):
            incoming = other.to_dict()
        elif isinstance(other, Mapping):
            incoming = dict(other)
        else:
            raise StateMergeError(f"Cannot merge object of type {type(other).__name__}")

        try:
            policy = ConflictPolicy(policy)
        except ValueError as e:
            raise StateMergeError(f"Unknown conflict policy: {policy}") from e

        for key, value in incoming.items():
            current = self._read(key)
            if current is MISSING:
                self.set(key, value)
                continue
            if current == value and policy != ConflictPolicy.COMBINE:
                continue
            if policy == ConflictPolicy.PREFER_EXISTING:
                continue
            if policy == ConflictPolicy.PREFER_INCOMING:
                self.set(key, value)
            else:
                self.set(key, combine_values(key, current, value))
        return self

    # === DUNDER HELPERS ===

    def __getitem__(self, key: str) -> Any:
        return self.require(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._read(key) is not MISSING

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._visible())

    def __repr__(self) -> str:
        return f"State(id={self.state_id[:8]}, version={self.version}, keys={self.keys()})"


def merge_deltas(
    deltas: list[Mapping[str, Any]],
    policy: ConflictPolicy = ConflictPolicy.PREFER_INCOMING,
    base: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Fold branch deltas together in order.

    A key written by more than one delta is a conflict resolved by ``policy``.
    Under COMBINE each delta is combined relative to ``base``, the values the
    branches forked from, and the result already includes the base.
    """
    if policy == ConflictPolicy.COMBINE:
        base = base or {}
        combined: dict[str, Any] = {}
        for delta in deltas:
            for key, value in delta.items():
                start = base.get(key, MISSING)
                current = combined.get(key, start)
                combined[key] = combine_from_base(key, current, start, value)
        return combined

    merged = State()
    for delta in deltas:
        merged.merge(delta, policy)
    return merged.to_dict()


class ScopedState(State):
    """
    View over a parent State whose writes are namespaced under ``prefix``.

    Reads resolve ``prefix + key`` first, then an input-mapped parent key,
    then the unprefixed parent key. Used by ScopedPrefix subgraphs.
    """

    def __init__(
        self,
        parent: State,
        prefix: str,
        input_mapping: Mapping[str, str] | None = None,
    ):
        super().__init__(
            metadata=parent.metadata,
            state_id=parent.state_id,
            created_at=parent.created_at,
        )
        # Share the metadata dict rather than copying it
        self.metadata = parent.metadata
        self.parent = parent
        self.prefix = prefix
        self._input_mapping = dict(input_mapping or {})

    @property
    def version(self) -> int:
        return self.parent.version

    def _read(self, key: str) -> Any:
        value = self.parent.get(self.prefix + key)
        if value is not MISSING:
            return value
        if key in self._input_mapping:
            return self.parent.get(self._input_mapping[key])
        return self.parent.get(key)

    def _write(self, key: str, value: Any) -> None:
        self.parent.set(self.prefix + key, value)

    def _remove(self, key: str) -> bool:
        return self.parent.delete(self.prefix + key)

    def _visible(self) -> dict[str, Any]:
        parent_items = self.parent.to_dict()
        visible = {k: v for k, v in parent_items.items() if not k.startswith(self.prefix)}
        for child_key, parent_key in self._input_mapping.items():
            if parent_key in parent_items:
                visible[child_key] = parent_items[parent_key]
        for key, value in parent_items.items():
            if key.startswith(self.prefix):
                visible[key[len(self.prefix) :]] = value
        return visible

    def scoped_keys(self) -> list[str]:
        """Parent keys that live under this view's prefix."""
        return [k for k in self.parent.keys() if k.startswith(self.prefix)]
