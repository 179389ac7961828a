"""
Knitout instruction store and its text serialization.

Instructions are kept in a :class:`~knitsketch.knitout.packed.PackedArray`
with one row per instruction::

    op   u8   opcode (7 low bits) + direction flag (high bit set = left)
    a0   b32  first argument   (typed per opcode)
    a1   b32  second argument
    a2   b32  third argument
    cptr u32  comment index + 1 (0 = no comment)
    meta u32  metadata + 1     (0 = no metadata)

Argument types: needles are packed as in :mod:`~knitsketch.knitout.needle`;
carrier sets are bitmasks over the ``Carriers`` header; racking and stitch
units are float32; extension numbers and presser modes are u32.

The text format is::

    ;!knitout-2
    ;;Carriers: 1 2 3 4 5 6 7 8 9 10
    ;;Machine: SWG091N2
    inhook 1
    knit + f10 1 ;cast-on $meta=0
    ;plain comment

Metadata is written inside the comment as ``$meta=<n>``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence, Union

import numpy as np

from .needle import LEFT, NONE, RIGHT, Needle
from .packed import B32, F32, I32, U8, U32, PackedArray

logger = logging.getLogger(__name__)

# ── Opcodes ───────────────────────────────────────────────────────────────────

NOOP = 0
IN = 1
INHOOK = 2
RELEASEHOOK = 3
OUT = 4
OUTHOOK = 5
STITCH = 6
RACK = 7
KNIT = 8
TUCK = 9
SPLIT = 10
DROP = 11
AMISS = 12
XFER = 13
MISS = 14
PAUSE = 15
X_STITCH_NUMBER = 16
X_SPEED_NUMBER = 17
X_PRESSER_MODE = 18

OPCODE_MASK = 0x7F
DIR_MASK = 0x80
LEFT_FLAG = 0x80
RIGHT_FLAG = 0x00

PRESSER_OFF = 0
PRESSER_AUTO = 1
PRESSER_ON = 2
_PRESSER_NAMES = ("off", "auto", "on")

META_PREFIX = "$meta="
DEFAULT_VERSION = 2
DEFAULT_CARRIERS: tuple[str, ...] = tuple(str(i) for i in range(1, 11))

# Argument kinds
CARRIERS = "cs"
STITCH_UNIT = "s"
RACKING = "r"
NEEDLE = "n"
DIRECTION = "d"
STITCH_NUMBER = "sn"
SPEED_NUMBER = "vn"
PRESSER_MODE = "pm"

OPERATIONS: tuple[tuple[str, ...], ...] = (
    ("",),
    ("in", CARRIERS),
    ("inhook", CARRIERS),
    ("releasehook", CARRIERS),
    ("out", CARRIERS),
    ("outhook", CARRIERS),
    ("stitch", STITCH_UNIT, STITCH_UNIT),
    ("rack", RACKING),
    ("knit", DIRECTION, NEEDLE, CARRIERS),
    ("tuck", DIRECTION, NEEDLE, CARRIERS),
    ("split", DIRECTION, NEEDLE, NEEDLE, CARRIERS),
    ("drop", NEEDLE),
    ("amiss", NEEDLE),
    ("xfer", NEEDLE, NEEDLE),
    ("miss", DIRECTION, NEEDLE, CARRIERS),
    ("pause",),
    ("x-stitch-number", STITCH_NUMBER),
    ("x-speed-number", SPEED_NUMBER),
    ("x-presser-mode", PRESSER_MODE),
)
OPCODES: dict[str, int] = {entry[0]: code for code, entry in enumerate(OPERATIONS)}
OP_HAS_LOOP: tuple[bool, ...] = tuple(entry[0] in ("knit", "tuck", "split") for entry in OPERATIONS)

# Storage type per argument kind
_ARG_TYPES = {
    CARRIERS: U32,
    STITCH_UNIT: F32,
    RACKING: F32,
    NEEDLE: I32,
    STITCH_NUMBER: U32,
    SPEED_NUMBER: U32,
    PRESSER_MODE: U32,
}

Entry = tuple[Any, ...]


class KnitoutError(ValueError):
    """Raised on invalid instructions or unreadable Knitout text."""


def format_float(value: float) -> str:
    """Shortest text that reads back to the same float32."""
    return np.format_float_positional(np.float32(value), trim="-")


def _presser_mode(value: Union[int, str]) -> int:
    if isinstance(value, str):
        if value not in _PRESSER_NAMES:
            raise KnitoutError(f"Invalid presser mode {value!r}")
        return _PRESSER_NAMES.index(value)
    return int(value)


class Knitout:
    """Packed Knitout program with headers and comments.

    Emit instructions through the named methods (``knit``, ``tuck``,
    ``xfer``...) or :meth:`emit`; serialize with :meth:`to_string` and read
    back with :meth:`from_string`.
    """

    def __init__(self) -> None:
        self.array = PackedArray(
            [("op", U8), ("a0", B32), ("a1", B32), ("a2", B32), ("cptr", U32), ("meta", U32)]
        )
        self.comments: list[str] = []
        self.version = DEFAULT_VERSION
        self.headers: dict[str, Union[str, list[str]]] = {"Carriers": list(DEFAULT_CARRIERS)}

    def __len__(self) -> int:
        return self.array.length

    def allocate(self, count: int) -> None:
        self.array.allocate(count)

    # ── Rows ──────────────────────────────────────────────────────────────────

    def add_entry(self, opcode: int, direction: int = NONE) -> Knitout:
        self.array.push()
        if direction == LEFT:
            opcode |= DIR_MASK
        elif direction == RIGHT:
            opcode &= ~DIR_MASK
        elif direction != NONE:
            raise KnitoutError(f"Invalid direction {direction!r}")
        self.array.set(-1, "op", opcode)
        return self

    def flush(self) -> None:
        """Hook for streaming subclasses; the plain store has nothing to flush."""

    def get_operation(self, index: int) -> int:
        return int(self.array.get(index, "op")) & OPCODE_MASK

    def has_operation(self, index: int) -> bool:
        return self.get_operation(index) != NOOP

    def get_direction(self, index: int) -> int:
        return LEFT if int(self.array.get(index, "op")) & DIR_MASK else RIGHT

    def set_direction(self, index: int, direction: int) -> Knitout:
        if direction not in (LEFT, RIGHT):
            raise KnitoutError(f"Invalid direction {direction!r}")
        flag = LEFT_FLAG if direction == LEFT else RIGHT_FLAG
        self.array.set(index, "op", self.get_operation(index) | flag)
        return self

    def has_comment(self, index: int) -> bool:
        return self.array.get(index, "cptr") > 0

    def get_comment(self, index: int) -> Optional[str]:
        ptr = int(self.array.get(index, "cptr"))
        return self.comments[ptr - 1] if ptr else None

    def set_comment(self, index: int, text: str) -> Knitout:
        ptr = int(self.array.get(index, "cptr"))
        if ptr:
            self.comments[ptr - 1] = text
        else:
            self.comments.append(text)
            self.array.set(index, "cptr", len(self.comments))
        return self

    def add_comment(self, text: str) -> Knitout:
        self.add_entry(NOOP)
        return self.set_comment(-1, text)

    def has_metadata(self, index: int) -> bool:
        return self.array.get(index, "meta") > 0

    def get_metadata(self, index: int) -> int:
        """Metadata at *index*, or -1 if absent."""
        return int(self.array.get(index, "meta")) - 1

    def set_metadata(self, index: int, data: int) -> Knitout:
        if data < 0:
            raise KnitoutError(f"Metadata must be non-negative, got {data}")
        self.array.set(index, "meta", data + 1)
        return self

    # ── Headers ───────────────────────────────────────────────────────────────

    def get_header(self, name: str) -> Optional[Union[str, list[str]]]:
        return self.headers.get(name)

    def set_header(self, name: str, value: Union[str, Sequence[str]]) -> Knitout:
        self.headers[name] = value if isinstance(value, str) else [str(v) for v in value]
        return self

    def set_position(self, position: str) -> Knitout:
        return self.set_header("Position", position)

    def get_carriers(self) -> list[str]:
        carriers = self.headers["Carriers"]
        return carriers if isinstance(carriers, list) else carriers.split()

    def set_carriers(self, carriers: Sequence[str]) -> Knitout:
        if not carriers:
            raise KnitoutError("The carrier list cannot be empty")
        self.headers["Carriers"] = [str(c) for c in carriers]
        return self

    def carrier_bit(self, name: Union[str, int]) -> int:
        carriers = self.get_carriers()
        try:
            return carriers.index(str(name))
        except ValueError:
            raise KnitoutError(f"Carrier {name!r} does not exist") from None

    def carrier_mask(self, carriers: Union[int, Sequence[Union[str, int]]]) -> int:
        if isinstance(carriers, int):
            return carriers
        mask = 0
        for name in carriers:
            mask |= 1 << self.carrier_bit(name)
        return mask

    # ── Arguments ─────────────────────────────────────────────────────────────

    def set_args(self, index: int, *args: Any, require_carriers: bool = True) -> Knitout:
        """Set the arguments of the instruction at *index* following its grammar.

        Carrier arguments are required unless *require_carriers* is false
        (the text reader accepts yarn-less loop operations).
        """
        opcode = self.get_operation(index)
        kinds = OPERATIONS[opcode][1:]
        minimum = len(kinds) if require_carriers or not kinds or kinds[-1] != CARRIERS else len(kinds) - 1
        if len(args) < minimum or len(args) > len(kinds):
            raise KnitoutError(
                f"'{OPERATIONS[opcode][0]}' takes {len(kinds)} arguments, got {len(args)}"
            )
        slot = 0
        for kind, arg in zip(kinds, args):
            if kind == DIRECTION:
                self.set_direction(index, arg)
                continue
            if kind == CARRIERS:
                value: Union[int, float] = self.carrier_mask(arg)
                if not value and require_carriers:
                    raise KnitoutError("No carrier for a carrier-using operation")
            elif kind == NEEDLE:
                needle = arg if isinstance(arg, Needle) else Needle.parse(str(arg))
                value = needle.to_b32()
            elif kind == PRESSER_MODE:
                value = _presser_mode(arg)
            elif kind in (STITCH_UNIT, RACKING):
                value = float(arg)
            else:
                value = int(arg)
            self.array.set(index, f"a{slot}", value, _ARG_TYPES[kind])
            slot += 1
        return self

    def get_args(self, index: int) -> list[Any]:
        opcode = self.get_operation(index)
        if opcode >= len(OPERATIONS):
            raise KnitoutError(f"Unsupported operation code {opcode}")
        args: list[Any] = []
        slot = 0
        for kind in OPERATIONS[opcode][1:]:
            if kind == DIRECTION:
                args.append(self.get_direction(index))
                continue
            raw = self.array.get(index, f"a{slot}", _ARG_TYPES[kind])
            slot += 1
            if kind == CARRIERS:
                carriers = self.get_carriers()
                args.append([c for i, c in enumerate(carriers) if (int(raw) >> i) & 1])
            elif kind == NEEDLE:
                args.append(Needle.from_b32(int(raw)))
            else:
                args.append(raw)
        return args

    def get_entry(self, index: int) -> Entry:
        return (self.get_operation(index), *self.get_args(index))

    def entries(self) -> Iterator[Entry]:
        for i in range(len(self)):
            yield self.get_entry(i)

    # ── Emission ──────────────────────────────────────────────────────────────

    def emit(self, name: str, *args: Any) -> Knitout:
        """Append the instruction *name* with its arguments."""
        if name not in OPCODES or not name:
            raise KnitoutError(f"Unsupported operation {name!r}")
        opcode = OPCODES[name]
        self.add_entry(opcode)
        self.set_args(-1, *args)
        if not OP_HAS_LOOP[opcode]:
            self.flush()
        return self

    def in_(self, cs) -> Knitout:
        return self.emit("in", cs)

    def inhook(self, cs) -> Knitout:
        return self.emit("inhook", cs)

    def releasehook(self, cs) -> Knitout:
        return self.emit("releasehook", cs)

    def out(self, cs) -> Knitout:
        return self.emit("out", cs)

    def outhook(self, cs) -> Knitout:
        return self.emit("outhook", cs)

    def stitch(self, before: float, after: float) -> Knitout:
        return self.emit("stitch", before, after)

    def rack(self, racking: float) -> Knitout:
        return self.emit("rack", racking)

    def knit(self, d: int, n, cs) -> Knitout:
        return self.emit("knit", d, n, cs)

    def tuck(self, d: int, n, cs) -> Knitout:
        return self.emit("tuck", d, n, cs)

    def split(self, d: int, n, n2, cs) -> Knitout:
        return self.emit("split", d, n, n2, cs)

    def drop(self, n) -> Knitout:
        return self.emit("drop", n)

    def amiss(self, n) -> Knitout:
        return self.emit("amiss", n)

    def xfer(self, n, n2) -> Knitout:
        return self.emit("xfer", n, n2)

    def miss(self, d: int, n, cs) -> Knitout:
        return self.emit("miss", d, n, cs)

    def pause(self) -> Knitout:
        return self.emit("pause")

    def x_stitch_number(self, number: int) -> Knitout:
        return self.emit("x-stitch-number", number)

    def x_speed_number(self, number: int) -> Knitout:
        return self.emit("x-speed-number", number)

    def x_presser_mode(self, mode: Union[int, str]) -> Knitout:
        return self.emit("x-presser-mode", mode)

    # ── Text output ───────────────────────────────────────────────────────────

    def to_header_lines(self, lines: Optional[list[str]] = None) -> list[str]:
        lines = [] if lines is None else lines
        lines.append(f";!knitout-{self.version}")
        for name, value in self.headers.items():
            text = " ".join(value) if isinstance(value, list) else str(value)
            lines.append(f";;{name}: {text}")
        return lines

    def _format_args(self, opcode: int, args: list[Any]) -> list[str]:
        tokens = []
        for kind, arg in zip(OPERATIONS[opcode][1:], args):
            if kind == CARRIERS:
                if arg:
                    tokens.append(" ".join(arg))
            elif kind == DIRECTION:
                tokens.append("+" if arg == RIGHT else "-")
            elif kind == PRESSER_MODE:
                tokens.append(_PRESSER_NAMES[arg] if 0 <= arg < len(_PRESSER_NAMES) else "off")
            elif kind in (STITCH_UNIT, RACKING):
                tokens.append(format_float(arg))
            else:
                tokens.append(str(arg))
        return tokens

    def format_line(self, index: int) -> str:
        opcode, *args = self.get_entry(index)
        comment = self.get_comment(index) or ""
        meta = self.get_metadata(index)
        if meta != -1:
            comment += (" " if comment else "") + META_PREFIX + str(meta)
        operation = " ".join([OPERATIONS[opcode][0], *self._format_args(opcode, args)]).strip()
        if comment and operation:
            return f"{operation} ;{comment}"
        if operation:
            return operation
        if comment:
            return f";{comment}"
        return ""

    def to_body_lines(self, lines: Optional[list[str]] = None) -> list[str]:
        lines = [] if lines is None else lines
        lines.extend(self.format_line(i) for i in range(len(self)))
        return lines

    def to_string(self) -> str:
        return "\n".join(self.to_body_lines(self.to_header_lines()))

    __str__ = to_string

    @staticmethod
    def to_joint_string(*parts: Knitout) -> str:
        """One headered program whose body is every part after a ``; Part i`` line."""
        if not parts:
            raise KnitoutError("Joint export requires at least one program")
        if len(parts) == 1:
            return parts[0].to_string()
        lines = parts[0].to_header_lines()
        for i, part in enumerate(parts):
            lines.append(f"; Part {i}")
            part.to_body_lines(lines)
        return "\n".join(lines)

    def write(self, path: Union[str, Path]) -> None:
        Path(path).write_text(self.to_string() + "\n", encoding="utf-8")

    # ── Text input ────────────────────────────────────────────────────────────

    @classmethod
    def from_string(cls, text: Union[str, Sequence[str]], keep_empty_lines: bool = False) -> Knitout:
        """Parse Knitout text (a string or a list of lines).

        Raises:
            KnitoutError: On an unknown operation or malformed line.
        """
        lines = text.split("\n") if isinstance(text, str) else list(text)
        k = cls()
        k.allocate(len(lines))
        magic = False
        has_carriers = False
        in_body = False
        for lineno, line in enumerate(lines, start=1):
            line = line.rstrip("\r")
            if not line:
                if keep_empty_lines:
                    k.add_entry(NOOP)
                continue
            if line.startswith(";!knitout-"):
                if magic:
                    logger.warning("Multiple knitout version lines (line %d)", lineno)
                magic = True
                try:
                    k.version = int(line[len(";!knitout-"):])
                except ValueError:
                    raise KnitoutError(f"Invalid version line {line!r}") from None
            elif line.startswith(";;"):
                if in_body:
                    logger.warning("Header within the knitout body (line %d)", lineno)
                name, sep, value = line[2:].partition(": ")
                if not sep:
                    raise KnitoutError(f"Invalid header line {line!r}")
                if name == "Carriers":
                    has_carriers = True
                    k.set_carriers(value.split())
                else:
                    k.set_header(name, value)
            else:
                in_body = True
                k._read_body_line(line, lineno)
        if not magic:
            logger.warning("Knitout text without a version line")
        if not has_carriers:
            logger.warning("Knitout text without the required Carriers header")
        return k

    def _read_body_line(self, line: str, lineno: int) -> None:
        operation, sep, comment = line.partition(";")
        operation = operation.strip()
        meta = -1
        if sep:
            # the comment is everything after the first ';', padding included
            pos = comment.find(META_PREFIX)
            if pos >= 0:
                try:
                    meta = int(comment[pos + len(META_PREFIX):].split()[0])
                except (IndexError, ValueError):
                    raise KnitoutError(f"Invalid metadata on line {lineno}: {line!r}") from None
                # drop the single space format_line puts before the metadata
                end = pos - 1 if pos > 0 and comment[pos - 1] == " " else pos
                comment = comment[:end]
        tokens = operation.split()
        name = tokens[0] if tokens else ""
        if name not in OPCODES:
            raise KnitoutError(f"Unsupported operation {name!r} on line {lineno}")
        opcode = OPCODES[name]
        self.add_entry(opcode)
        if comment:
            self.set_comment(-1, comment)
        if meta >= 0:
            self.set_metadata(-1, meta)
        kinds = OPERATIONS[opcode][1:]
        if not kinds:
            return
        args: list[Any] = []
        rest = tokens[1:]
        for i, kind in enumerate(kinds):
            if kind == CARRIERS:
                args.append(rest[i:])
                break
            if i >= len(rest):
                raise KnitoutError(f"Missing arguments for '{name}' on line {lineno}")
            token = rest[i]
            try:
                if kind == DIRECTION:
                    if token not in ("+", "-"):
                        raise ValueError(token)
                    args.append(RIGHT if token == "+" else LEFT)
                elif kind == NEEDLE:
                    args.append(Needle.parse(token))
                elif kind in (STITCH_UNIT, RACKING):
                    args.append(float(token))
                elif kind == PRESSER_MODE:
                    args.append(_presser_mode(token))
                else:
                    args.append(int(token))
            except ValueError:
                raise KnitoutError(f"Invalid argument {token!r} for '{name}' on line {lineno}") from None
        self.set_args(-1, *args, require_carriers=False)

    @classmethod
    def read(cls, path: Union[str, Path], keep_empty_lines: bool = False) -> Knitout:
        text = Path(path).read_text(encoding="utf-8")
        return cls.from_string(text.rstrip("\n"), keep_empty_lines)

    # ── Snapshots ─────────────────────────────────────────────────────────────

    def to_data(self, minimal: bool = True) -> dict[str, Any]:
        return {
            "array": self.array.to_data(minimal),
            "comments": list(self.comments),
            "version": self.version,
            "headers": {k: (list(v) if isinstance(v, list) else v) for k, v in self.headers.items()},
        }

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> Knitout:
        k = cls()
        k.array = PackedArray.from_data(data["array"])
        k.comments = list(data["comments"])
        k.version = data["version"]
        k.headers = dict(data["headers"])
        return k


class KnitoutStream(Knitout):
    """Knitout store that notifies listeners when an instruction is complete.

    An instruction is committed when the next one starts or, for operations
    without a loop, as soon as its arguments are set.
    """

    def __init__(self) -> None:
        super().__init__()
        self.committed = True
        self.callbacks: list[Callable[[Knitout, Entry], None]] = []

    def listen(self, callback: Callable[[Knitout, Entry], None]) -> None:
        self.callbacks.append(callback)

    def clear(self) -> None:
        self.callbacks.clear()

    def commit(self) -> None:
        entry = self.get_entry(-1)
        for callback in self.callbacks:
            callback(self, entry)
        self.committed = True

    def add_entry(self, opcode: int, direction: int = NONE) -> Knitout:
        if not self.committed:
            self.commit()
        super().add_entry(opcode, direction)
        self.committed = False
        return self

    def flush(self) -> None:
        if not self.committed:
            self.commit()
