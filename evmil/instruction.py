"""
EVM Instruction Model

Instructions are immutable values shared by the disassembler, which decodes
them from raw bytecode, and by the compiler, which emits them into a
``Bytecode`` builder.  Besides the real opcodes there are three pseudo
instructions:

  - ``PUSHL(label)``: push the (not yet known) address of a label
  - ``JUMPDEST(label)``: a jump destination; decoded jump destinations use
    their own byte offset as the label
  - ``DATA(bytes)``: opaque bytes which are not code

Opcode numbers and stack effects come from the ``pyevmasm`` tables.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple

import pyevmasm
from eth_utils import to_hex


# Largest immediate a PUSH can carry (one EVM word).
MAX_PUSH_WIDTH = 32

# Immediate width used when a label push is assembled (i.e. PUSH2).
LABEL_WIDTH = 2

# PUSH0 is 0x5f, PUSH1 is 0x60, PUSH32 is 0x7f.  The pyevmasm tables predate
# PUSH0, so it is handled here.
_PUSH_BASE = 0x5f

# Instructions which unconditionally end a basic block.  JUMPI is not one:
# its fall-through continues the current block.
TERMINATORS = frozenset({'JUMP', 'RETURN', 'REVERT', 'STOP', 'INVALID'})

BRANCHES = frozenset({'JUMP', 'JUMPI'})



@lru_cache(maxsize=None)
def _opcode_info(name: str) -> Tuple[int, int, int]:
    """
    Look up a mnemonic in the pyevmasm instruction table.

    Args:
        name: Opcode mnemonic (e.g. "ADD", "DUP3")

    Returns:
        Tuple of (opcode, pops, pushes)
    """
    try:
        insn = pyevmasm.assemble_one(name)
    except Exception as e:
        raise ValueError(f"Unknown EVM instruction: {name}") from e
    return insn.opcode, insn.pops, insn.pushes


@dataclass(frozen=True)
class Instruction:
    """A single EVM instruction (or pseudo instruction)."""
    name: str
    data: bytes = b""
    label: Optional[int] = None

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def push(cls, data: bytes) -> "Instruction":
        """Push the given big-endian immediate (1 to 32 bytes)."""
        if not 1 <= len(data) <= MAX_PUSH_WIDTH:
            raise ValueError(f"PUSH immediate must be 1-{MAX_PUSH_WIDTH} bytes, got {len(data)}")
        return cls('PUSH', data=bytes(data))

    @classmethod
    def push_label(cls, label: int) -> "Instruction":
        return cls('PUSHL', label=label)

    @classmethod
    def jumpdest(cls, label: int) -> "Instruction":
        return cls('JUMPDEST', label=label)

    @classmethod
    def raw(cls, data: bytes) -> "Instruction":
        """Opaque data embedded in the code section."""
        return cls('DATA', data=bytes(data))

    @classmethod
    def dup(cls, n: int) -> "Instruction":
        if not 1 <= n <= 16:
            raise ValueError(f"DUP depth must be 1-16, got {n}")
        return cls(f'DUP{n}')

    @classmethod
    def swap(cls, n: int) -> "Instruction":
        if not 1 <= n <= 16:
            raise ValueError(f"SWAP depth must be 1-16, got {n}")
        return cls(f'SWAP{n}')

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def length(self) -> int:
        """Encoded size of this instruction in bytes."""
        if self.name == 'PUSH':
            return 1 + len(self.data)
        if self.name == 'DATA':
            return len(self.data)
        if self.name == 'PUSHL':
            return 1 + LABEL_WIDTH
        return 1

    @property
    def value(self) -> Optional[int]:
        """Immediate of a PUSH as an unsigned integer."""
        if self.name == 'PUSH0':
            return 0
        if self.name != 'PUSH':
            return None
        return int.from_bytes(self.data, 'big')

    def can_branch(self) -> bool:
        return self.name in BRANCHES

    def is_terminator(self) -> bool:
        return self.name in TERMINATORS

    def stack_effect(self) -> Tuple[int, int]:
        """
        Number of stack items consumed and produced by this instruction.

        Returns:
            Tuple of (pops, pushes)
        """
        if self.name in ('PUSH', 'PUSH0', 'PUSHL'):
            return 0, 1
        if self.name in ('JUMPDEST', 'DATA'):
            return 0, 0
        _, pops, pushes = _opcode_info(self.name)
        return pops, pushes

    def encode(self) -> bytes:
        """Encode a concrete instruction into bytes."""
        if self.name == 'PUSH':
            return bytes([_PUSH_BASE + len(self.data)]) + self.data
        if self.name == 'PUSH0':
            return bytes([_PUSH_BASE])
        if self.name == 'DATA':
            return self.data
        if self.name == 'JUMPDEST':
            return bytes([_opcode_info('JUMPDEST')[0]])
        if self.name == 'PUSHL':
            raise ValueError(f"Cannot encode unresolved label push {self}")
        return bytes([_opcode_info(self.name)[0]])

    def __str__(self) -> str:
        if self.name == 'PUSH':
            return f"PUSH{len(self.data)} {to_hex(self.data)}"
        if self.name == 'DATA':
            return f"DATA {to_hex(self.data)}"
        if self.name in ('PUSHL', 'JUMPDEST'):
            return f"{self.name}({self.label})"
        return self.name


def decode(offset: int, code: bytes) -> Instruction:
    """
    Decode the instruction starting at a given offset.

    Immediate bytes which run past the end of the code read as zero, as
    they do on the EVM.  Unknown opcodes decode as ``INVALID``; ``0x5f``
    decodes as ``PUSH0``.

    Args:
        offset: Byte offset of the instruction
        code: Raw bytecode

    Returns:
        The decoded instruction (use ``length`` to find the next one)
    """
    if not 0 <= offset < len(code):
        raise IndexError(f"Cannot decode at offset {offset} (code is {len(code)} bytes)")
    if code[offset] == _PUSH_BASE:
        return PUSH0
    window = bytes(code[offset:offset + 1 + MAX_PUSH_WIDTH]).ljust(1 + MAX_PUSH_WIDTH, b"\x00")
    insn = pyevmasm.disassemble_one(window, offset)
    name = insn.name

    if name == 'JUMPDEST':
        return Instruction.jumpdest(offset)
    if name.startswith('PUSH') and insn.operand_size > 0:
        return Instruction.push(insn.operand.to_bytes(insn.operand_size, 'big'))
    return Instruction(name)


def decode_all(code: bytes) -> List[Instruction]:
    """Naive linear decoding of an entire buffer."""
    insns = []
    pc = 0
    while pc < len(code):
        insn = decode(pc, code)
        insns.append(insn)
        pc += insn.length
    return insns


# Instructions emitted by the compiler.
PUSH0 = Instruction('PUSH0')
STOP = Instruction('STOP')
ADD = Instruction('ADD')
SUB = Instruction('SUB')
MUL = Instruction('MUL')
DIV = Instruction('DIV')
MOD = Instruction('MOD')
LT = Instruction('LT')
GT = Instruction('GT')
EQ = Instruction('EQ')
ISZERO = Instruction('ISZERO')
POP = Instruction('POP')
MLOAD = Instruction('MLOAD')
MSTORE = Instruction('MSTORE')
SLOAD = Instruction('SLOAD')
SSTORE = Instruction('SSTORE')
CALLDATALOAD = Instruction('CALLDATALOAD')
JUMP = Instruction('JUMP')
JUMPI = Instruction('JUMPI')
RETURN = Instruction('RETURN')
REVERT = Instruction('REVERT')
INVALID = Instruction('INVALID')
