"""
EVM Disassembler

Splits raw bytecode into basic blocks and refines which of them are code
using a fixed-point dataflow analysis over a pluggable abstract domain.

The block scan is an over-approximation: some blocks turn out to be
unreachable and are in fact embedded data (e.g. constant tables).  Every
block gets one *entry* context; states at other locations are recomputed
on demand from the entry context of their enclosing block.
"""

import logging
from bisect import bisect_right
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Type, TypeVar, Union

from eth_utils import decode_hex

from evmil.analysis.state import AbstractState, UnitState
from evmil.config import AnalysisConfig
from evmil.instruction import Instruction, decode

T = TypeVar('T', bound=AbstractState)
S = TypeVar('S', bound=AbstractState)


class InvalidAddressError(LookupError):
    """A bytecode address lies outside every block."""

    def __init__(self, pc: int):
        super().__init__(f"Invalid bytecode address: {pc:#x}")
        self.pc = pc


@dataclass(frozen=True)
class Block:
    """Half-open byte range ``[start, end)`` of straight-line code."""
    start: int
    end: int

    def __post_init__(self):
        if not self.start < self.end:
            raise ValueError(f"Empty block [{self.start}, {self.end})")

    def encloses(self, pc: int) -> bool:
        return self.start <= pc < self.end

    def __len__(self) -> int:
        return self.end - self.start


class Disassembly(Generic[T]):
    """
    Block structure of a bytecode program plus one abstract context per
    block.

    A ``JUMPDEST`` can only appear as the first instruction of a block, and
    blocks end after ``JUMP``, ``RETURN``, ``REVERT``, ``STOP`` or
    ``INVALID``.  Every reachable block other than the first one is either a
    fall-through or begins with a ``JUMPDEST``.
    """

    def __init__(self, code: bytes, domain: Type[T] = UnitState,
                 config: Optional[AnalysisConfig] = None):
        """
        Scan the code into blocks and seed their contexts.

        Args:
            code: Raw bytecode
            domain: Abstract state type used for the analysis
            config: Analysis settings
        """
        self.code = bytes(code)
        self.domain = domain
        self.config = config or AnalysisConfig()
        self.logger = logging.getLogger(__name__)
        self.blocks: List[Block] = self._scan_blocks(self.code)
        self.contexts: List[T] = [domain.bottom() for _ in self.blocks]
        if self.contexts:
            self.contexts[0] = domain.origin()
        self._starts = [blk.start for blk in self.blocks]
        self._refined = False

        self.logger.debug(f"Scanned {len(self.code)} bytes into {len(self.blocks)} blocks")

    @classmethod
    def _from_parts(cls, code: bytes, domain, config: AnalysisConfig,
                    blocks: List[Block], contexts: list) -> "Disassembly":
        instance = cls.__new__(cls)
        instance.code = code
        instance.domain = domain
        instance.config = config
        instance.logger = logging.getLogger(__name__)
        instance.blocks = blocks
        instance.contexts = contexts
        instance._starts = [blk.start for blk in blocks]
        instance._refined = False
        return instance

    # ================================================================
    # Queries
    # ================================================================

    def get_state(self, loc: int) -> T:
        """
        Get the abstract state immediately before a given location.

        The state is rebuilt by replaying the transfer function from the
        start of the enclosing block.
        """
        self._check_live()
        bid = self.get_enclosing_block_id(loc)
        blk = self.blocks[bid]
        ctx = self.contexts[bid].copy()
        pc = blk.start

        while pc < loc:
            insn = decode(pc, self.code)
            ctx = ctx.transfer(insn)
            pc += insn.length

        return ctx

    def get_enclosing_block_id(self, pc: int) -> int:
        i = bisect_right(self._starts, pc) - 1
        if i < 0 or not self.blocks[i].encloses(pc):
            raise InvalidAddressError(pc)
        return i

    def get_enclosing_block(self, pc: int) -> Block:
        return self.blocks[self.get_enclosing_block_id(pc)]

    def is_block_reachable(self, bid: int) -> bool:
        """The root block (``bid == 0``) is always considered reachable."""
        if not 0 <= bid < len(self.blocks):
            raise IndexError(f"Invalid block id: {bid}")
        return bid == 0 or self.contexts[bid].is_reachable()

    def read_bytes(self, start: int, end: int) -> bytes:
        """Read ``code[start:end]``, padding with zeros past the end."""
        if end < start:
            raise ValueError(f"Invalid byte range [{start}, {end})")
        chunk = self.code[start:end]
        return chunk + bytes(end - start - len(chunk))

    def to_vec(self) -> List[Instruction]:
        """
        Flatten the disassembly into a sequence of instructions.

        Unreachable blocks are emitted as a single ``DATA`` instruction
        covering their bytes.
        """
        self._check_live()
        insns = []

        for bid, blk in enumerate(self.blocks):
            if self.is_block_reachable(bid):
                insns.extend(self._disassemble_block(blk))
            else:
                insns.append(Instruction.raw(self.read_bytes(blk.start, blk.end)))

        return insns

    # ================================================================
    # Analysis
    # ================================================================

    def refine(self, domain: Type[S], convert: Optional[Callable[[T], S]] = None) -> "Disassembly[S]":
        """
        Move this disassembly into a different abstract domain.

        Each context is converted (by default with ``domain.lift``) and the
        origin state is joined into the entry block.  This disassembly can
        no longer be used afterwards.

        Args:
            domain: Target abstract state type
            convert: Conversion from the current domain to ``domain``

        Returns:
            A disassembly over the same bytes and blocks
        """
        self._check_live()
        convert = convert or domain.lift
        contexts = [convert(ctx) for ctx in self.contexts]
        if contexts:
            contexts[0].merge(domain.origin())

        refined = Disassembly._from_parts(self.code, domain, self.config, self.blocks, contexts)
        self._refined = True
        self.contexts = []

        self.logger.debug(f"Refined disassembly from {self.domain.__name__} to {domain.__name__}")
        return refined

    def build(self) -> "Disassembly[T]":
        """
        Run the dataflow analysis until no entry context changes.

        Termination relies on the domain's ``merge`` being monotone over a
        finite-height lattice.  ``config.max_passes`` bounds the number of
        passes when set.
        """
        self._check_live()
        passes = 0
        changed = True

        while changed:
            changed = False
            passes += 1
            if self.config.max_passes is not None and passes > self.config.max_passes:
                raise RuntimeError(f"No fixed point after {self.config.max_passes} passes")

            for bid, blk in enumerate(self.blocks):
                if not self.is_block_reachable(bid):
                    continue
                ctx = self.contexts[bid].copy()
                if self.config.trace:
                    self.logger.debug(f"Block {bid} [{blk.start:#06x}, {blk.end:#06x}): {ctx}")

                pc = blk.start
                while pc < blk.end:
                    insn = decode(pc, self.code)
                    if insn.can_branch():
                        top = ctx.peek(0)
                        if top.is_known and top.value < len(self.code):
                            target = top.value
                            branch_ctx = ctx.branch(target, insn)
                            target_id = self.get_enclosing_block_id(target)
                            changed |= self.contexts[target_id].merge(branch_ctx)
                        elif top.is_known:
                            self.logger.debug(f"Ignoring jump to {top.value:#x} outside the code at {pc:#06x}")
                    ctx = ctx.transfer(insn)
                    pc += insn.length

                # Fall through into the next block
                if bid + 1 < len(self.blocks):
                    changed |= self.contexts[bid + 1].merge(ctx)

            self.logger.debug(f"Pass {passes}: {'changed' if changed else 'stable'}")

        reachable = sum(1 for bid in range(len(self.blocks)) if self.is_block_reachable(bid))
        self.logger.info(f"Fixed point after {passes} passes: {reachable}/{len(self.blocks)} blocks reachable")
        return self

    # ================================================================
    # Helpers
    # ================================================================

    def _check_live(self) -> None:
        if self._refined:
            raise ValueError("Disassembly has been refined and can no longer be used")

    def _disassemble_block(self, blk: Block) -> List[Instruction]:
        insns = []
        pc = blk.start
        while pc < blk.end:
            insn = decode(pc, self.code)
            insns.append(insn)
            pc += insn.length
        return insns

    @staticmethod
    def _scan_blocks(code: bytes) -> List[Block]:
        """
        Linear scan splitting the code into blocks.

        Returns:
            Contiguous, sorted blocks covering ``[0, len(code))``
        """
        blocks = []
        start = 0
        pc = 0

        while pc < len(code):
            insn = decode(pc, code)
            if insn.name == 'JUMPDEST' and pc != start:
                blocks.append(Block(start, pc))
                start = pc
            pc = min(pc + insn.length, len(code))
            if insn.is_terminator():
                blocks.append(Block(start, pc))
                start = pc

        if start != pc:
            blocks.append(Block(start, pc))

        return blocks


def disassemble(code: Union[bytes, str], config: Optional[AnalysisConfig] = None) -> Disassembly[UnitState]:
    """
    Disassemble raw bytes or a hex string (with or without ``0x``).

    Args:
        code: Bytecode
        config: Analysis settings

    Returns:
        A block-level disassembly over ``UnitState``
    """
    if isinstance(code, str):
        code = decode_hex(code)
    return Disassembly(code, UnitState, config)
