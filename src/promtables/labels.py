"""Label sets: the dimension values attached to one sample.

A :class:`LabelSet` is used both as an aggregation key (through its
canonical serialization, see :meth:`LabelSet.canonical_key`) and as input
for rendering the ``{k="v",...}`` block of an exposition line.

Example:
    >>> labels = LabelSet({"protocol": "ftp", "foo": "BAR"})
    >>> labels.canonical_key()
    '{"foo":"BAR","protocol":"ftp"}'
    >>> labels.render()
    'foo="BAR",protocol="ftp"'
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator, Mapping
from typing import Any, Union

from promtables.errors import InvalidArgument

# Reserved for histogram bucket rendering.
BUCKET_LABEL = "le"

LabelsLike = Union["LabelSet", Mapping[str, Any], Iterable[tuple[str, Any]], None]


def escape_label_value(value: str) -> str:
    """Escape a label value for the text exposition format."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class LabelSet(Mapping[str, str]):
    """Immutable, order-insensitive mapping of label name to label value."""

    __slots__ = ("_items", "_hash")

    def __init__(self, labels: LabelsLike = None, **kwargs: Any) -> None:
        items: dict[str, str] = {}

        if isinstance(labels, LabelSet):
            items.update(labels._items)
        elif isinstance(labels, Mapping):
            for key, value in labels.items():
                self._check_name(key)
                items[key] = self._check_value(key, value)
        elif labels is not None:
            for pair in labels:
                try:
                    key, value = pair
                except (TypeError, ValueError):
                    raise InvalidArgument(f"Label pairs must be (name, value) tuples, got {pair!r}")
                self._check_name(key)
                if key in items:
                    raise InvalidArgument(f"Duplicate label name: {key}")
                items[key] = self._check_value(key, value)

        for key, value in kwargs.items():
            if key in items:
                raise InvalidArgument(f"Duplicate label name: {key}")
            items[key] = self._check_value(key, value)

        self._items = dict(sorted(items.items()))
        self._hash: int | None = None

    @staticmethod
    def _check_name(name: Any) -> None:
        if not isinstance(name, str) or not name:
            raise InvalidArgument(f"Label names must be non-empty strings, got {name!r}")
        try:
            name.encode("utf-8")
        except UnicodeEncodeError:
            raise InvalidArgument(f"Label name is not valid UTF-8: {name!r}")

    @staticmethod
    def _check_value(name: str, value: Any) -> str:
        text = str(value)
        try:
            text.encode("utf-8")
        except UnicodeEncodeError:
            raise InvalidArgument(f"Value of label '{name}' is not valid UTF-8: {text!r}")
        return text

    @classmethod
    def coerce(cls, labels: LabelsLike) -> "LabelSet":
        """Return ``labels`` as a LabelSet, reusing it when it already is one."""
        if isinstance(labels, LabelSet):
            return labels
        return cls(labels)

    @classmethod
    def from_key(cls, key: str) -> "LabelSet":
        """Rebuild a LabelSet from its canonical key."""
        if key == "":
            return cls()
        try:
            data = json.loads(key)
        except json.JSONDecodeError as e:
            raise InvalidArgument(f"Malformed label key {key!r}: {e}")
        if not isinstance(data, dict):
            raise InvalidArgument(f"Malformed label key {key!r}")
        return cls(data)

    # Mapping protocol

    def __getitem__(self, key: str) -> str:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, LabelSet):
            return self._items == other._items
        if isinstance(other, Mapping):
            return self._items == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(tuple(self._items.items()))
        return self._hash

    def __repr__(self) -> str:
        return f"LabelSet({self._items!r})"

    # Derivations

    def canonical_key(self) -> str:
        """Deterministic serialization used as the store's label key.

        The empty set serializes to ``""`` so label-less series sort first.
        """
        if not self._items:
            return ""
        return json.dumps(self._items, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def merge(self, other: LabelsLike) -> "LabelSet":
        """Return a new set with ``other``'s labels added (``other`` wins)."""
        merged = dict(self._items)
        merged.update(LabelSet.coerce(other)._items)
        return LabelSet(merged)

    def without(self, *names: str) -> "LabelSet":
        """Return a new set with the given label names removed."""
        return LabelSet({k: v for k, v in self._items.items() if k not in names})

    def render(self, extra: LabelsLike = None) -> str:
        """Render as ``k1="v1",k2="v2"`` sorted by name."""
        labels = self.merge(extra) if extra else self
        return ",".join(
            f'{name}="{escape_label_value(value)}"' for name, value in labels._items.items()
        )

    def to_dict(self) -> dict[str, str]:
        """Return a plain dict copy."""
        return dict(self._items)
