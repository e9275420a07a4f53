"""
Bytecode Builder

An append-only stream of instructions together with a label allocator.
The compiler pushes instructions (including symbolic ``PUSHL`` and
``JUMPDEST`` pseudo instructions) and ``assemble`` resolves labels to byte
offsets to produce deployable code.
"""

import logging
from typing import Dict, Iterator, List

from eth_utils import to_hex

from evmil.instruction import LABEL_WIDTH, Instruction


class AssemblyError(ValueError):
    """Raised when labels cannot be resolved to byte offsets."""


class Bytecode:
    """Instruction stream under construction."""

    def __init__(self):
        self.instructions: List[Instruction] = []
        self._next_label = 0
        self.logger = logging.getLogger(__name__)

    def fresh_label(self) -> int:
        """Allocate a label which has never been returned before."""
        label = self._next_label
        self._next_label += 1
        return label

    @property
    def label_count(self) -> int:
        return self._next_label

    def push(self, insn: Instruction) -> None:
        self.instructions.append(insn)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self.instructions)

    def __len__(self) -> int:
        return len(self.instructions)

    def __getitem__(self, index):
        return self.instructions[index]

    def assemble(self) -> bytes:
        """
        Encode the instruction stream, resolving every label push.

        Label pushes always assemble to ``PUSH2`` so that offsets can be
        computed in a single pass before encoding.

        Returns:
            The assembled bytecode
        """
        offsets = self._label_offsets()
        code = bytearray()

        for insn in self.instructions:
            if insn.name == 'PUSHL':
                if insn.label not in offsets:
                    raise AssemblyError(f"Label {insn.label} is used but never placed")
                target = offsets[insn.label].to_bytes(LABEL_WIDTH, 'big')
                code += Instruction.push(target).encode()
            else:
                code += insn.encode()

        self.logger.debug(f"Assembled {len(self.instructions)} instructions into {len(code)} bytes")
        return bytes(code)

    def to_hex(self) -> str:
        return to_hex(self.assemble())

    def _label_offsets(self) -> Dict[int, int]:
        """Map each placed label to the byte offset of its JUMPDEST."""
        offsets = {}
        limit = 1 << (8 * LABEL_WIDTH)
        pc = 0

        for insn in self.instructions:
            if insn.name == 'JUMPDEST':
                if insn.label in offsets:
                    raise AssemblyError(f"Label {insn.label} is placed more than once")
                if pc >= limit:
                    raise AssemblyError(f"Label {insn.label} at offset {pc} does not fit in {LABEL_WIDTH} bytes")
                offsets[insn.label] = pc
            pc += insn.length

        return offsets

    def __str__(self) -> str:
        return "\n".join(str(insn) for insn in self.instructions)
