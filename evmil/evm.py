"""
Concrete EVM Interpreter

A small interpreter over 256-bit words, covering the opcodes the compiler
emits plus DUP/SWAP.  It exists to check the semantics of compiled code;
gas, calls, logs and the rest of the machine are not modelled.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from evmil.instruction import decode, decode_all

logger = logging.getLogger(__name__)

WORD_MODULUS = 2 ** 256
WORD_MASK = WORD_MODULUS - 1

# Memory accesses past this bound halt instead of allocating.
MAX_MEMORY = 1 << 24

# Binary operations: the first argument is the top of the stack.
_BINARY_OPS = {
    'ADD': lambda a, b: (a + b) & WORD_MASK,
    'SUB': lambda a, b: (a - b) & WORD_MASK,
    'MUL': lambda a, b: (a * b) & WORD_MASK,
    'DIV': lambda a, b: a // b if b else 0,
    'MOD': lambda a, b: a % b if b else 0,
    'EXP': lambda a, b: pow(a, b, WORD_MODULUS),
    'LT': lambda a, b: int(a < b),
    'GT': lambda a, b: int(a > b),
    'EQ': lambda a, b: int(a == b),
    'AND': lambda a, b: a & b,
    'OR': lambda a, b: a | b,
    'XOR': lambda a, b: a ^ b,
}

_UNARY_OPS = {
    'ISZERO': lambda a: int(a == 0),
    'NOT': lambda a: a ^ WORD_MASK,
}


class ExecutionStatus(Enum):
    STOPPED = "stopped"
    RETURNED = "returned"
    REVERTED = "reverted"
    INVALID = "invalid"


@dataclass
class ExecutionResult:
    """Outcome of running a program to completion."""
    status: ExecutionStatus
    data: bytes = b""
    stack: List[int] = field(default_factory=list)  # bottom first
    storage: Dict[int, int] = field(default_factory=dict)
    steps: int = 0


class _Halt(Exception):
    """Raised internally to end execution with an exceptional status."""


class Evm:
    """Executes bytecode from pc 0 until it halts."""

    def __init__(self, code: bytes, calldata: bytes = b"",
                 storage: Optional[Dict[int, int]] = None, max_steps: int = 100000):
        self.code = bytes(code)
        self.calldata = bytes(calldata)
        self.storage: Dict[int, int] = dict(storage or {})
        self.max_steps = max_steps
        self.stack: List[int] = []
        self.memory = bytearray()
        self.pc = 0
        self.steps = 0
        self._jumpdests = self._find_jumpdests()

    def run(self) -> ExecutionResult:
        """
        Run until the program halts.

        Returns:
            Execution result; exceptional halts (bad jumps, stack underflow,
            unsupported opcodes) have status ``INVALID``
        """
        try:
            while True:
                result = self.step()
                if result is not None:
                    return result
        except _Halt as e:
            logger.debug(f"Exceptional halt at pc={self.pc:#x}: {e}")
            return self._result(ExecutionStatus.INVALID)

    def step(self) -> Optional[ExecutionResult]:
        """Execute one instruction, returning a result if execution ended."""
        if self.pc >= len(self.code):
            return self._result(ExecutionStatus.STOPPED)
        if self.steps >= self.max_steps:
            raise RuntimeError(f"Execution exceeded {self.max_steps} steps")
        self.steps += 1

        insn = decode(self.pc, self.code)
        name = insn.name
        next_pc = self.pc + insn.length

        if name == 'STOP':
            return self._result(ExecutionStatus.STOPPED)
        elif name in ('RETURN', 'REVERT'):
            offset, size = self._pop(), self._pop()
            data = self._read_memory(offset, size)
            status = ExecutionStatus.RETURNED if name == 'RETURN' else ExecutionStatus.REVERTED
            return self._result(status, data)
        elif name == 'INVALID':
            raise _Halt("INVALID instruction")
        elif name in ('PUSH', 'PUSH0'):
            self._push(insn.value)
        elif name.startswith('DUP'):
            n = int(name[3:])
            if n > len(self.stack):
                raise _Halt("stack underflow")
            self._push(self.stack[-n])
        elif name.startswith('SWAP'):
            n = int(name[4:])
            if n >= len(self.stack):
                raise _Halt("stack underflow")
            self.stack[-1], self.stack[-1 - n] = self.stack[-1 - n], self.stack[-1]
        elif name == 'POP':
            self._pop()
        elif name in _BINARY_OPS:
            a, b = self._pop(), self._pop()
            self._push(_BINARY_OPS[name](a, b))
        elif name in _UNARY_OPS:
            self._push(_UNARY_OPS[name](self._pop()))
        elif name == 'MLOAD':
            offset = self._pop()
            self._push(int.from_bytes(self._read_memory(offset, 32), 'big'))
        elif name == 'MSTORE':
            offset, value = self._pop(), self._pop()
            self._expand_memory(offset + 32)
            self.memory[offset:offset + 32] = value.to_bytes(32, 'big')
        elif name == 'SLOAD':
            self._push(self.storage.get(self._pop(), 0))
        elif name == 'SSTORE':
            key, value = self._pop(), self._pop()
            self.storage[key] = value
        elif name == 'CALLDATALOAD':
            offset = self._pop()
            chunk = self.calldata[offset:offset + 32]
            self._push(int.from_bytes(chunk.ljust(32, b"\x00"), 'big'))
        elif name == 'CALLDATASIZE':
            self._push(len(self.calldata))
        elif name == 'JUMP':
            next_pc = self._jump_target(self._pop())
        elif name == 'JUMPI':
            dest, cond = self._pop(), self._pop()
            if cond != 0:
                next_pc = self._jump_target(dest)
        elif name == 'JUMPDEST':
            pass
        else:
            raise _Halt(f"unsupported instruction {name}")

        self.pc = next_pc
        return None

    # ================================================================
    # Helpers
    # ================================================================

    def _push(self, word: int) -> None:
        if len(self.stack) >= 1024:
            raise _Halt("stack overflow")
        self.stack.append(word & WORD_MASK)

    def _pop(self) -> int:
        if not self.stack:
            raise _Halt("stack underflow")
        return self.stack.pop()

    def _expand_memory(self, end: int) -> None:
        """Grow memory (in 32-byte words) to cover ``end``."""
        if end > MAX_MEMORY:
            raise _Halt(f"memory access beyond {MAX_MEMORY:#x}")
        if end > len(self.memory):
            self.memory.extend(bytes(-(-end // 32) * 32 - len(self.memory)))

    def _read_memory(self, offset: int, size: int) -> bytes:
        if size == 0:
            return b""
        self._expand_memory(offset + size)
        return bytes(self.memory[offset:offset + size])

    def _jump_target(self, dest: int) -> int:
        if dest not in self._jumpdests:
            raise _Halt(f"invalid jump destination {dest:#x}")
        return dest

    def _find_jumpdests(self) -> set:
        dests = set()
        pc = 0
        for insn in decode_all(self.code):
            if insn.name == 'JUMPDEST':
                dests.add(pc)
            pc += insn.length
        return dests

    def _result(self, status: ExecutionStatus, data: bytes = b"") -> ExecutionResult:
        return ExecutionResult(status, data, list(self.stack), dict(self.storage), self.steps)


def execute(code: bytes, calldata: bytes = b"", storage: Optional[Dict[int, int]] = None) -> ExecutionResult:
    """Convenience wrapper running ``code`` on a fresh interpreter."""
    return Evm(code, calldata, storage).run()
