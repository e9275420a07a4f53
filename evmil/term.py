"""
Term Tree

Statements and expressions of the intermediate language consumed by the
``Compiler``.  Terms are produced by a front end (not part of this package)
and are never mutated once built.
"""

import string
from dataclasses import dataclass
from enum import Enum
from typing import Sequence


class Region(Enum):
    """Regions which can be indexed like arrays."""
    MEMORY = "memory"
    STORAGE = "storage"
    CALL_DATA = "calldata"


class BinOp(Enum):
    """Binary operators."""
    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "*"
    DIVIDE = "/"
    REMAINDER = "%"
    EQUALS = "=="
    NOT_EQUALS = "!="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUALS = "<="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUALS = ">="
    LOGICAL_AND = "&&"
    LOGICAL_OR = "||"

    @property
    def is_logical(self) -> bool:
        return self in (BinOp.LOGICAL_AND, BinOp.LOGICAL_OR)


class Term:
    """Base class of all statements and expressions."""


def _check_digits(digits: str, alphabet: str) -> None:
    if not digits or any(c not in alphabet for c in digits):
        raise ValueError(f"Malformed literal digits: {digits!r}")


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assert(Term):
    expr: Term


@dataclass(frozen=True)
class Assignment(Term):
    lhs: Term
    rhs: Term


@dataclass(frozen=True)
class Fail(Term):
    pass


@dataclass(frozen=True)
class Goto(Term):
    label: str


@dataclass(frozen=True)
class IfGoto(Term):
    expr: Term
    label: str


@dataclass(frozen=True)
class Label(Term):
    name: str


@dataclass(frozen=True)
class Revert(Term):
    exprs: Sequence[Term] = ()


@dataclass(frozen=True)
class Succeed(Term):
    exprs: Sequence[Term] = ()


@dataclass(frozen=True)
class Stop(Term):
    pass


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Binary(Term):
    op: BinOp
    lhs: Term
    rhs: Term


@dataclass(frozen=True)
class ArrayAccess(Term):
    """``source[index]``, where source is normally a ``MemoryAccess``."""
    source: Term
    index: Term


@dataclass(frozen=True)
class MemoryAccess(Term):
    region: Region


@dataclass(frozen=True)
class IntLiteral(Term):
    """Decimal literal, kept as its digit string."""
    digits: str

    def __post_init__(self):
        _check_digits(self.digits, string.digits)


@dataclass(frozen=True)
class HexLiteral(Term):
    """Hexadecimal literal, kept as its digit string (no ``0x``)."""
    digits: str

    def __post_init__(self):
        _check_digits(self.digits, string.hexdigits)
