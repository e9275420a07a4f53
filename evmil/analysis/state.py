"""
Abstract States

An abstract state describes the possible states of the EVM at a program
point.  The disassembly engine is generic over any type offering the
``AbstractState`` capabilities; concrete domains never depend on one
another.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, TypeVar

from evmil.instruction import Instruction


@dataclass(frozen=True)
class AbstractValue:
    """A statically known word, or ``UNKNOWN`` when value is None."""
    value: Optional[int] = None

    @classmethod
    def known(cls, value: int) -> "AbstractValue":
        return cls(value)

    @property
    def is_known(self) -> bool:
        return self.value is not None

    def unwrap(self) -> int:
        if self.value is None:
            raise ValueError("Abstract value is not statically known")
        return self.value

    def __str__(self) -> str:
        return hex(self.value) if self.is_known else "??"


UNKNOWN = AbstractValue()

S = TypeVar('S', bound='AbstractState')


class AbstractState(Protocol):
    """
    Capabilities required by ``Disassembly``.

    ``transfer`` and ``branch`` return new states and leave the receiver
    untouched; ``merge`` is the only mutating operation.  For the fixed
    point to terminate, ``merge`` must be monotone over a lattice of finite
    height.

    Domains used with ``Disassembly.refine`` may also provide a ``lift``
    classmethod converting a state of another domain.
    """

    def is_reachable(self) -> bool:
        """Whether a real predecessor state has reached this point."""
        ...

    def transfer(self: S, insn: Instruction) -> S:
        """Abstract effect of executing one instruction."""
        ...

    def branch(self: S, target: int, insn: Instruction) -> S:
        """State at ``target`` when ``insn`` branches there from this state."""
        ...

    def merge(self: S, other: S) -> bool:
        """Join ``other`` into this state, reporting whether it changed."""
        ...

    def peek(self, n: int) -> AbstractValue:
        """Best-effort value of the stack slot ``n`` positions from the top."""
        ...

    def copy(self: S) -> S:
        ...

    @classmethod
    def bottom(cls: type) -> "AbstractState":
        """Least informative state, given to every non-entry block."""
        ...

    @classmethod
    def origin(cls: type) -> "AbstractState":
        """State of the EVM when execution begins."""
        ...


class UnitState:
    """
    Trivial domain: everything is reachable and nothing is known.

    Used when the engine only discovers blocks.
    """

    def is_reachable(self) -> bool:
        return True

    def transfer(self, insn: Instruction) -> "UnitState":
        return self

    def branch(self, target: int, insn: Instruction) -> "UnitState":
        return self

    def merge(self, other: "UnitState") -> bool:
        return False

    def peek(self, n: int) -> AbstractValue:
        return UNKNOWN

    def copy(self) -> "UnitState":
        return self

    @classmethod
    def bottom(cls) -> "UnitState":
        return cls()

    @classmethod
    def origin(cls) -> "UnitState":
        return cls()

    @classmethod
    def lift(cls, state) -> "UnitState":
        return cls()

    def __eq__(self, other) -> bool:
        return isinstance(other, UnitState)

    def __hash__(self) -> int:
        return hash(UnitState)

    def __str__(self) -> str:
        return "()"

    __repr__ = __str__
