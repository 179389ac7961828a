"""
Packed columnar array: a struct of typed numpy columns with append semantics.

Each field is declared as a ``(name, type)`` pair where the type is one of
``u8, u16, u32, i8, i16, i32, f32, f64, b32``.  ``b32`` columns are raw
32-bit storage whose interpretation (``u32``, ``i32`` or ``f32``) must be
given on every access, so one column can hold differently typed arguments.

Capacity grows geometrically on :meth:`PackedArray.push`.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Sequence, Union

import numpy as np

U8 = "u8"
U16 = "u16"
U32 = "u32"
I8 = "i8"
I16 = "i16"
I32 = "i32"
F32 = "f32"
F64 = "f64"
B32 = "b32"

_DTYPES: dict[str, np.dtype] = {
    U8: np.dtype(np.uint8),
    U16: np.dtype(np.uint16),
    U32: np.dtype(np.uint32),
    I8: np.dtype(np.int8),
    I16: np.dtype(np.int16),
    I32: np.dtype(np.int32),
    F32: np.dtype(np.float32),
    F64: np.dtype(np.float64),
    B32: np.dtype(np.uint32),
}

# Interpretations allowed for each storage type.
_VIEWS: dict[str, tuple[str, ...]] = {B32: (U32, I32, F32)}

Field = tuple[str, str]


class PackedArrayError(IndexError):
    """Raised on out-of-bounds access or an invalid field/type."""


class PackedArray:
    """Struct-of-columns array over typed numpy buffers."""

    def __init__(self, fields: Sequence[Field], allocate_length: int = 0, increase_factor: float = 2.0) -> None:
        if not fields or not all(len(f) == 2 for f in fields):
            raise ValueError("Fields must be a non-empty list of (name, type) pairs")
        for name, kind in fields:
            if kind not in _DTYPES:
                raise ValueError(f"Unsupported type {kind!r} for field {name!r}")
        if increase_factor <= 1:
            raise ValueError(f"Increase factor must exceed 1, got {increase_factor}")
        self.fields: tuple[Field, ...] = tuple((str(n), t) for n, t in fields)
        self.field_types: dict[str, str] = dict(self.fields)
        self.increase_factor = increase_factor
        self.length = 0
        self._columns: dict[str, np.ndarray] = {
            name: np.zeros(0, dtype=_DTYPES[kind]) for name, kind in self.fields
        }
        if allocate_length:
            self.allocate(allocate_length)

    # ── Capacity ──────────────────────────────────────────────────────────────

    @property
    def capacity(self) -> int:
        return len(next(iter(self._columns.values())))

    @property
    def element_size(self) -> int:
        return sum(_DTYPES[kind].itemsize for _, kind in self.fields)

    @property
    def used_bytes(self) -> int:
        return self.length * self.element_size

    def __len__(self) -> int:
        return self.length

    def allocate(self, num_elements: int) -> None:
        """Grow the capacity to at least *num_elements* (never shrinks)."""
        if num_elements <= self.capacity:
            return
        for name, column in self._columns.items():
            grown = np.zeros(num_elements, dtype=column.dtype)
            grown[: self.length] = column[: self.length]
            self._columns[name] = grown

    def clear(self) -> None:
        self.length = 0

    # ── Element access ────────────────────────────────────────────────────────

    def _index(self, index: int) -> int:
        if index < 0:
            index += self.length
        if not 0 <= index < self.length:
            raise PackedArrayError(f"Index {index} out of bounds for length {self.length}")
        return index

    def _column(self, field: str, kind: Optional[str]) -> np.ndarray:
        if field not in self.field_types:
            raise PackedArrayError(f"Field {field!r} does not exist")
        storage = self.field_types[field]
        column = self._columns[field]
        if storage in _VIEWS:
            if kind is None:
                raise PackedArrayError(f"Field {field!r} is binary: an access type is required")
            if kind not in _VIEWS[storage]:
                raise PackedArrayError(f"Cannot view {storage} field {field!r} as {kind}")
            return column.view(_DTYPES[kind])
        if kind is not None and kind != storage:
            raise PackedArrayError(f"Field {field!r} has type {storage}, not {kind}")
        return column

    def get(self, index: int, field: str, kind: Optional[str] = None) -> Union[int, float]:
        """Typed value of *field* at *index* (negative indices count from the end)."""
        value = self._column(field, kind)[self._index(index)]
        return float(value) if value.dtype.kind == "f" else int(value)

    def get_entry(self, index: int) -> dict[str, int]:
        """All non-binary fields of an element as a dict; binary fields read as u32."""
        i = self._index(index)
        return {
            name: int(self._column(name, U32 if kind == B32 else None)[i])
            for name, kind in self.fields
            if _DTYPES[kind].kind != "f"
        }

    def set(self, index: int, field: str, value: Union[int, float], kind: Optional[str] = None) -> None:
        column = self._column(field, kind)
        column[self._index(index)] = value

    def set_entry(self, index: int, values: Mapping[str, Any]) -> None:
        """Set the non-binary fields present in *values*."""
        for name, value in values.items():
            if name in self.field_types and self.field_types[name] not in _VIEWS:
                self.set(index, name, value)

    def column(self, field: str, kind: Optional[str] = None) -> np.ndarray:
        """Read-only view over the used part of a column."""
        view = self._column(field, kind)[: self.length]
        view = view.view()
        view.flags.writeable = False
        return view

    # ── Structural edits ──────────────────────────────────────────────────────

    def push(self, values: Optional[Mapping[str, Any]] = None) -> int:
        """Append a zeroed element (optionally setting fields); return its index."""
        if self.length == self.capacity:
            self.allocate(int(np.ceil(max(self.capacity, 1) * self.increase_factor)))
        for column in self._columns.values():
            column[self.length] = 0
        self.length += 1
        if values:
            self.set_entry(-1, values)
        return self.length - 1

    def splice(self, index: int, delete_count: int, *items: Mapping[str, Any]) -> None:
        """Remove *delete_count* elements at *index* and insert *items* there."""
        if index < 0:
            index += self.length
        if delete_count < 0 or not 0 <= index <= self.length or index + delete_count > self.length:
            raise PackedArrayError(f"Invalid splice({index}, {delete_count}) for length {self.length}")
        after = self.length - delete_count + len(items)
        if after > self.capacity:
            self.allocate(max(after, int(np.ceil(max(self.capacity, 1) * self.increase_factor))))
        tail = slice(index + delete_count, self.length)
        dest = index + len(items)
        for column in self._columns.values():
            moved = column[tail].copy()
            column[dest : dest + len(moved)] = moved
            column[index:dest] = 0
        self.length = after
        for i, item in enumerate(items):
            self.set_entry(index + i, item)

    def insert_at(self, index: int, values: Optional[Mapping[str, Any]] = None) -> None:
        if index == self.length:
            self.push(values)
        else:
            self.splice(index, 0, values or {})

    def remove_at(self, index: int) -> None:
        self.splice(index, 1)

    def fill(self, value: Union[float, Sequence[float], Callable[[int], Sequence[float]]], start: int = 0) -> None:
        """Fill every non-binary field from *start*.

        *value* is a scalar for all fields, a per-field sequence, or a
        function of the index returning a per-field sequence.
        """
        names = [n for n, k in self.fields if k not in _VIEWS]
        for i in range(start, self.length):
            if callable(value):
                values = value(i)
            elif isinstance(value, (list, tuple)):
                values = value
            else:
                values = [value] * len(names)
            if len(values) != len(names):
                raise ValueError("Fill requires one value per field")
            for name, v in zip(names, values):
                self._columns[name][i] = v

    # ── Snapshots ─────────────────────────────────────────────────────────────

    def copy(self, minimal: bool = False) -> PackedArray:
        """Deep copy; *minimal* trims the capacity to the length."""
        other = PackedArray(self.fields, increase_factor=self.increase_factor)
        size = self.length if minimal else self.capacity
        other._columns = {name: col[:size].copy() for name, col in self._columns.items()}
        other.length = self.length
        return other

    def to_data(self, minimal: bool = True) -> dict[str, Any]:
        """Plain-data snapshot (fields, length and one buffer per column)."""
        trimmed = self.copy(minimal)
        return {
            "fields": [list(f) for f in self.fields],
            "length": trimmed.length,
            "increaseFactor": trimmed.increase_factor,
            "columns": trimmed._columns,
        }

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> PackedArray:
        array = cls([tuple(f) for f in data["fields"]], increase_factor=data.get("increaseFactor", 2.0))
        columns = data.get("columns") or {}
        for name, kind in array.fields:
            if name in columns:
                array._columns[name] = np.array(columns[name], dtype=_DTYPES[kind])
        array.length = int(data.get("length", 0))
        return array
