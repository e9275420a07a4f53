"""
Constant Stack Domain

Tracks the operand stack as a sequence of abstract values so that jump
targets pushed as constants can be resolved.  A state is either bottom
(unreachable) or a stack whose slots are known constants or ``UNKNOWN``.

Joining two stacks keeps their common (top-aligned) prefix and forgets any
slot on which they disagree.  Together with the depth cap this gives the
lattice finite height, so the fixed point always terminates.
"""

from typing import Optional, Tuple

from evmil.analysis.state import UNKNOWN, AbstractValue
from evmil.instruction import Instruction

# Maximum EVM stack depth.
MAX_STACK_DEPTH = 1024

Stack = Tuple[AbstractValue, ...]


class ConstantStackState:
    """Abstract operand stack (top of stack is the last element)."""

    def __init__(self, stack: Optional[Stack] = None):
        self.stack = stack

    # ------------------------------------------------------------------
    # Lattice
    # ------------------------------------------------------------------

    @classmethod
    def bottom(cls) -> "ConstantStackState":
        return cls(None)

    @classmethod
    def origin(cls) -> "ConstantStackState":
        return cls(())

    @classmethod
    def lift(cls, state) -> "ConstantStackState":
        """Convert a state from another domain; foreign states become bottom."""
        if isinstance(state, cls):
            return state.copy()
        return cls.bottom()

    def is_reachable(self) -> bool:
        return self.stack is not None

    def merge(self, other: "ConstantStackState") -> bool:
        if other.stack is None:
            return False
        if self.stack is None:
            self.stack = other.stack
            return True

        n = min(len(self.stack), len(other.stack))
        mine = self.stack[len(self.stack) - n:]
        theirs = other.stack[len(other.stack) - n:]
        joined = tuple(a if a == b else UNKNOWN for a, b in zip(mine, theirs))

        if joined == self.stack:
            return False
        self.stack = joined
        return True

    def copy(self) -> "ConstantStackState":
        return ConstantStackState(self.stack)

    # ------------------------------------------------------------------
    # Transfer functions
    # ------------------------------------------------------------------

    def peek(self, n: int) -> AbstractValue:
        if self.stack is None or n >= len(self.stack):
            return UNKNOWN
        return self.stack[-1 - n]

    def transfer(self, insn: Instruction) -> "ConstantStackState":
        if self.stack is None or insn.is_terminator():
            return ConstantStackState.bottom()

        name = insn.name
        stack = list(self.stack)

        if name in ('PUSH', 'PUSH0'):
            stack.append(AbstractValue.known(insn.value))
        elif name.startswith('DUP'):
            stack.append(self.peek(int(name[3:]) - 1))
        elif name.startswith('SWAP'):
            depth = int(name[4:])
            # Slots below the tracked part of the stack are unknown
            while len(stack) <= depth:
                stack.insert(0, UNKNOWN)
            stack[-1], stack[-1 - depth] = stack[-1 - depth], stack[-1]
        else:
            pops, pushes = insn.stack_effect()
            del stack[max(0, len(stack) - pops):]
            stack.extend([UNKNOWN] * pushes)

        return ConstantStackState(tuple(stack[-MAX_STACK_DEPTH:]))

    def branch(self, target: int, insn: Instruction) -> "ConstantStackState":
        if self.stack is None:
            return ConstantStackState.bottom()
        pops, _ = insn.stack_effect()
        return ConstantStackState(self.stack[:max(0, len(self.stack) - pops)])

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def __eq__(self, other) -> bool:
        return isinstance(other, ConstantStackState) and self.stack == other.stack

    def __hash__(self) -> int:
        return hash(self.stack)

    def __str__(self) -> str:
        if self.stack is None:
            return "_|_"
        return "[" + ", ".join(str(v) for v in self.stack) + "]"

    def __repr__(self) -> str:
        return f"ConstantStackState({self})"
