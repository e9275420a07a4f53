"""
IL Compiler

Lowers a term tree into EVM instructions appended to a ``Bytecode``
builder.  The builder owns label allocation; the compiler only remembers
which label each symbolic name was given.

Conditions are compiled with short-circuit semantics directly into
branches.  Conditional lowering always takes exactly one of a true target
or a false target, so no call ever needs a throwaway label for the side it
does not care about.
"""

import logging
from enum import Enum
from typing import Dict, NoReturn, Optional, Sequence, Union

from evmil import instruction as evm
from evmil.bytecode import Bytecode
from evmil.config import CompilerConfig
from evmil.instruction import Instruction
from evmil.term import (
    ArrayAccess,
    Assert,
    Assignment,
    Binary,
    BinOp,
    Fail,
    Goto,
    HexLiteral,
    IfGoto,
    IntLiteral,
    Label,
    MemoryAccess,
    Region,
    Revert,
    Stop,
    Succeed,
    Term,
)

logger = logging.getLogger(__name__)


class CompilerErrorKind(Enum):
    """Reasons a translation can fail."""
    LITERAL_OVERFLOW = "literal overflow"  # literal does not fit in a word
    INVALID_MEMORY_ACCESS = "invalid memory access"
    INVALID_LVAL = "invalid lval"


class CompilerError(Exception):
    """Translation failure; carries only its kind."""

    def __init__(self, kind: CompilerErrorKind):
        super().__init__(kind.value)
        self.kind = kind


# Operators with a direct EVM counterpart.
_ARITHMETIC_OPS = {
    BinOp.ADD: [evm.ADD],
    BinOp.SUBTRACT: [evm.SUB],
    BinOp.MULTIPLY: [evm.MUL],
    BinOp.DIVIDE: [evm.DIV],
    BinOp.REMAINDER: [evm.MOD],
    BinOp.EQUALS: [evm.EQ],
    BinOp.LESS_THAN: [evm.LT],
    BinOp.GREATER_THAN: [evm.GT],
    BinOp.NOT_EQUALS: [evm.EQ, evm.ISZERO],
    BinOp.LESS_THAN_OR_EQUALS: [evm.GT, evm.ISZERO],
    BinOp.GREATER_THAN_OR_EQUALS: [evm.LT, evm.ISZERO],
}

_LOADS = {
    Region.MEMORY: evm.MLOAD,
    Region.STORAGE: evm.SLOAD,
    Region.CALL_DATA: evm.CALLDATALOAD,
}

_STORES = {
    Region.MEMORY: evm.MSTORE,
    Region.STORAGE: evm.SSTORE,
}


def make_push(value: int, word_size: int = 32) -> Instruction:
    """
    Build the shortest PUSH for an unsigned value.

    Raises:
        CompilerError: If the value needs more than ``word_size`` bytes
    """
    width = max(1, (value.bit_length() + 7) // 8)
    if width > word_size:
        logger.debug("Literal %#x does not fit in %d bytes", value, word_size)
        raise CompilerError(CompilerErrorKind.LITERAL_OVERFLOW)
    return Instruction.push(value.to_bytes(width, 'big'))


class Compiler:
    """Translates terms into instructions for a ``Bytecode`` builder."""

    def __init__(self, bytecode: Bytecode, config: Optional[CompilerConfig] = None):
        self.bytecode = bytecode
        self.config = config or CompilerConfig()
        self.labels: Dict[str, int] = {}

    def label(self, name: str) -> int:
        """Get (allocating on first use) the bytecode label for a name."""
        if name not in self.labels:
            self.labels[name] = self.bytecode.fresh_label()
        return self.labels[name]

    def translate(self, term: Term) -> None:
        """
        Translate a statement or expression.

        Raises:
            CompilerError: On the first invalid construct; whatever was
                already pushed to the builder must be discarded
        """
        # Statements
        if isinstance(term, Assert):
            self._translate_assert(term.expr)
        elif isinstance(term, Assignment):
            self._translate_assignment(term.lhs, term.rhs)
        elif isinstance(term, Fail):
            self.bytecode.push(evm.INVALID)
        elif isinstance(term, Goto):
            self.bytecode.push(Instruction.push_label(self.label(term.label)))
            self.bytecode.push(evm.JUMP)
        elif isinstance(term, IfGoto):
            self.translate_conditional(term.expr, true_label=self.label(term.label))
        elif isinstance(term, Label):
            self.bytecode.push(Instruction.jumpdest(self.label(term.name)))
        elif isinstance(term, Revert):
            self._translate_succeed_revert(evm.REVERT, term.exprs)
        elif isinstance(term, Succeed):
            if term.exprs:
                self._translate_succeed_revert(evm.RETURN, term.exprs)
            else:
                self.bytecode.push(evm.STOP)
        elif isinstance(term, Stop):
            self.bytecode.push(evm.STOP)
        # Expressions
        elif isinstance(term, Binary):
            self._translate_binary(term.op, term.lhs, term.rhs)
        elif isinstance(term, ArrayAccess):
            self._translate_array_access(term.source, term.index)
        elif isinstance(term, MemoryAccess):
            self._fail(CompilerErrorKind.INVALID_MEMORY_ACCESS, term)
        # Values
        elif isinstance(term, IntLiteral):
            self._translate_literal(term, 10)
        elif isinstance(term, HexLiteral):
            self._translate_literal(term, 16)
        else:
            raise TypeError(f"Unknown term: {term!r}")

    # ================================================================
    # Statements
    # ================================================================

    def _translate_assert(self, expr: Term) -> None:
        lab = self.bytecode.fresh_label()
        self.translate_conditional(expr, true_label=lab)
        # False branch
        self.bytecode.push(evm.INVALID)
        # True branch
        self.bytecode.push(Instruction.jumpdest(lab))

    def _translate_assignment(self, lhs: Term, rhs: Term) -> None:
        # Value first, so the address ends up on top for the store
        self.translate(rhs)
        if not isinstance(lhs, ArrayAccess):
            self._fail(CompilerErrorKind.INVALID_LVAL, lhs)
        if not isinstance(lhs.source, MemoryAccess) or lhs.source.region not in _STORES:
            self._fail(CompilerErrorKind.INVALID_MEMORY_ACCESS, lhs)
        self.translate(lhs.index)
        self.bytecode.push(_STORES[lhs.source.region])

    def _translate_succeed_revert(self, insn: Instruction, exprs: Sequence[Term]) -> None:
        """Store each value in its own memory slot and return/revert over them."""
        slot = self.config.slot_size
        for i, expr in enumerate(exprs):
            self.translate(expr)
            self.bytecode.push(make_push(i * slot, self.config.word_size))
            self.bytecode.push(evm.MSTORE)
        # RETURN and REVERT pop the offset first, then the size
        self.bytecode.push(make_push(len(exprs) * slot, self.config.word_size))
        self.bytecode.push(make_push(0, self.config.word_size))
        self.bytecode.push(insn)

    # ================================================================
    # Conditions
    # ================================================================

    def translate_conditional(self, expr: Term, true_label: Optional[int] = None,
                              false_label: Optional[int] = None) -> None:
        """
        Translate a condition into a branch with short-circuit semantics.

        Exactly one target must be given.  Control transfers to
        ``true_label`` when the condition is nonzero, or to ``false_label``
        when it is zero; otherwise execution falls through.

        Args:
            expr: Condition
            true_label: Target taken when the condition holds
            false_label: Target taken when the condition does not hold
        """
        if (true_label is None) == (false_label is None):
            raise ValueError("Exactly one of true_label or false_label must be given")

        if isinstance(expr, Binary) and expr.op == BinOp.LOGICAL_AND:
            self._translate_conditional_conjunct(expr.lhs, expr.rhs, true_label, false_label)
        elif isinstance(expr, Binary) and expr.op == BinOp.LOGICAL_OR:
            self._translate_conditional_disjunct(expr.lhs, expr.rhs, true_label, false_label)
        else:
            self._translate_conditional_other(expr, true_label, false_label)

    def _translate_conditional_conjunct(self, lhs: Term, rhs: Term,
                                        true_label: Optional[int], false_label: Optional[int]) -> None:
        if true_label is not None:
            # lhs false skips over rhs
            skip = self.bytecode.fresh_label()
            self.translate_conditional(lhs, false_label=skip)
            self.translate_conditional(rhs, true_label=true_label)
            self.bytecode.push(Instruction.jumpdest(skip))
        else:
            self.translate_conditional(lhs, false_label=false_label)
            self.translate_conditional(rhs, false_label=false_label)

    def _translate_conditional_disjunct(self, lhs: Term, rhs: Term,
                                        true_label: Optional[int], false_label: Optional[int]) -> None:
        if false_label is not None:
            # lhs true skips over rhs
            skip = self.bytecode.fresh_label()
            self.translate_conditional(lhs, true_label=skip)
            self.translate_conditional(rhs, false_label=false_label)
            self.bytecode.push(Instruction.jumpdest(skip))
        else:
            self.translate_conditional(lhs, true_label=true_label)
            self.translate_conditional(rhs, true_label=true_label)

    def _translate_conditional_other(self, expr: Term, true_label: Optional[int],
                                     false_label: Optional[int]) -> None:
        self.translate(expr)
        if false_label is not None:
            self.bytecode.push(evm.ISZERO)
        self.bytecode.push(Instruction.push_label(true_label if true_label is not None else false_label))
        self.bytecode.push(evm.JUMPI)

    # ================================================================
    # Expressions
    # ================================================================

    def _translate_binary(self, op: BinOp, lhs: Term, rhs: Term) -> None:
        if op.is_logical:
            self._translate_logical_connective(op, lhs, rhs)
        else:
            self._translate_binary_arithmetic(op, lhs, rhs)

    def _translate_logical_connective(self, op: BinOp, lhs: Term, rhs: Term) -> None:
        """
        Short-circuiting ``&&``/``||`` producing a value.

        The left value is the result when it already decides the outcome
        (falsy for ``&&``, truthy for ``||``); otherwise it is popped and the
        right operand is evaluated in its place.
        """
        self.translate(lhs)
        self.bytecode.push(Instruction.dup(1))
        if op == BinOp.LOGICAL_AND:
            self.bytecode.push(evm.ISZERO)
        lab = self.bytecode.fresh_label()
        self.bytecode.push(Instruction.push_label(lab))
        self.bytecode.push(evm.JUMPI)
        self.bytecode.push(evm.POP)
        self.translate(rhs)
        self.bytecode.push(Instruction.jumpdest(lab))

    def _translate_binary_arithmetic(self, op: BinOp, lhs: Term, rhs: Term) -> None:
        # EVM binary ops take the top of the stack as their left operand,
        # so the right-hand side is pushed first.
        self.translate(rhs)
        self.translate(lhs)
        for insn in _ARITHMETIC_OPS[op]:
            self.bytecode.push(insn)

    def _translate_array_access(self, source: Term, index: Term) -> None:
        if not isinstance(source, MemoryAccess):
            self._fail(CompilerErrorKind.INVALID_MEMORY_ACCESS, source)
        self.translate(index)
        self.bytecode.push(_LOADS[source.region])

    def _translate_literal(self, literal: Union[IntLiteral, HexLiteral], radix: int) -> None:
        self.bytecode.push(make_push(int(literal.digits, radix), self.config.word_size))

    def _fail(self, kind: CompilerErrorKind, term: Term) -> NoReturn:
        logger.debug("Translation failed (%s) at %r", kind.value, term)
        raise CompilerError(kind)
