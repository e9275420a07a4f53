"""
Tests for evmil/analysis/disassembler.py

Covers:
  - Block scanning (terminators, JUMPDEST splits, JUMPI, trailing bytes)
  - Block lookup and invalid addresses
  - Reading bytes past the end of the code
  - Refinement into the constant stack domain
  - Fixed-point reachability and flattening to instructions
  - Pass limits and tracing
"""

import logging

import pytest

from evmil import instruction as evm
from evmil.analysis import (
    Block,
    ConstantStackState,
    Disassembly,
    InvalidAddressError,
    UnitState,
    disassemble,
)
from evmil.analysis.state import AbstractValue
from evmil.config import AnalysisConfig
from evmil.instruction import Instruction, decode_all

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# PUSH1 0x01, PUSH1 0x06, JUMPI, STOP, JUMPDEST, STOP
CONDITIONAL = bytes.fromhex("6001600657005b00")

# PUSH1 0x04, JUMP, INVALID, JUMPDEST, STOP
SKIPS_INVALID = bytes.fromhex("600456fe5b00")

# PUSH1 0x05, JUMP, <0xaa 0xbb data>, JUMPDEST, STOP
EMBEDDED_DATA = bytes.fromhex("600556aabb5b00")

# PUSH1 0x00, CALLDATALOAD, JUMP, STOP, JUMPDEST, STOP
DYNAMIC_JUMP = bytes.fromhex("60003556005b00")

# JUMPDEST, PUSH1 0x01, PUSH1 0x00, JUMP (loop growing the stack)
GROWING_LOOP = bytes.fromhex("5b6001600056")

# PUSH0, PUSH1 0x05, JUMPI, INVALID, JUMPDEST, STOP
WITH_PUSH0 = bytes.fromhex("5f600557fe5b00")

# PUSH1 0x07, JUMP, JUMPDEST, STOP, INVALID, INVALID, JUMPDEST, PUSH1 0x03, JUMP
# (the entry jumps forward to a block which jumps back)
BACKWARD_CHAIN = bytes.fromhex("6007565b00fefe5b600356")

SAMPLES = [CONDITIONAL, SKIPS_INVALID, EMBEDDED_DATA, DYNAMIC_JUMP, GROWING_LOOP, WITH_PUSH0, BACKWARD_CHAIN]


def _analyse(code, config=None):
    return Disassembly(code, UnitState, config).refine(ConstantStackState).build()


def _reachable(d):
    return [bid for bid in range(len(d.blocks)) if d.is_block_reachable(bid)]


# ---------------------------------------------------------------------------
# 1. Block scanning
# ---------------------------------------------------------------------------

class TestBlockScan:
    def test_jumpi_does_not_split(self):
        d = Disassembly(CONDITIONAL)
        assert d.blocks == [Block(0, 6), Block(6, 8)]

    def test_every_terminator_splits(self):
        d = Disassembly(SKIPS_INVALID)
        assert d.blocks == [Block(0, 3), Block(3, 4), Block(4, 6)]

    def test_jumpdest_splits_mid_block(self):
        d = Disassembly(bytes.fromhex("60015b00"))
        assert d.blocks == [Block(0, 2), Block(2, 4)]

    def test_leading_jumpdest_does_not_split(self):
        d = Disassembly(bytes.fromhex("5b00"))
        assert d.blocks == [Block(0, 2)]

    def test_straight_line_code_is_one_block(self):
        d = Disassembly(bytes.fromhex("600160020100")).build()
        assert d.blocks == [Block(0, 6)]
        assert d.is_block_reachable(0)
        assert d.to_vec() == [
            Instruction.push(b"\x01"),
            Instruction.push(b"\x02"),
            evm.ADD,
            evm.STOP,
        ]

    def test_push0_does_not_split(self):
        assert Disassembly(WITH_PUSH0).blocks == [Block(0, 5), Block(5, 7)]
        assert Disassembly(bytes.fromhex("5f5f5600")).blocks == [Block(0, 3), Block(3, 4)]

    def test_trailing_bytes_form_a_block(self):
        d = Disassembly(bytes.fromhex("0060016002"))
        assert d.blocks == [Block(0, 1), Block(1, 5)]

    def test_truncated_push_ends_at_code_end(self):
        d = Disassembly(bytes.fromhex("0061ff"))
        assert d.blocks == [Block(0, 1), Block(1, 3)]

    def test_empty_code(self):
        d = Disassembly(b"")
        assert d.blocks == []
        assert d.build().to_vec() == []

    @pytest.mark.parametrize("code", SAMPLES)
    def test_blocks_cover_code(self, code):
        blocks = Disassembly(code).blocks
        assert blocks[0].start == 0
        assert blocks[-1].end == len(code)
        for prev, nxt in zip(blocks, blocks[1:]):
            assert prev.end == nxt.start

    def test_empty_block_rejected(self):
        with pytest.raises(ValueError):
            Block(3, 3)


# ---------------------------------------------------------------------------
# 2. Queries
# ---------------------------------------------------------------------------

class TestQueries:
    def test_enclosing_block(self):
        d = Disassembly(SKIPS_INVALID)
        assert d.get_enclosing_block_id(0) == 0
        assert d.get_enclosing_block_id(2) == 0
        assert d.get_enclosing_block_id(3) == 1
        assert d.get_enclosing_block(5) == Block(4, 6)

    def test_address_past_end(self):
        d = Disassembly(SKIPS_INVALID)
        with pytest.raises(InvalidAddressError) as exc_info:
            d.get_enclosing_block_id(6)
        assert exc_info.value.pc == 6

    def test_negative_address(self):
        with pytest.raises(LookupError):
            Disassembly(SKIPS_INVALID).get_enclosing_block_id(-1)

    def test_read_bytes_pads_with_zeros(self):
        d = Disassembly(SKIPS_INVALID)
        assert d.read_bytes(4, 8) == b"\x5b\x00\x00\x00"
        assert d.read_bytes(10, 12) == b"\x00\x00"
        assert d.read_bytes(0, 2) == b"\x60\x04"

    def test_read_bytes_bad_range(self):
        with pytest.raises(ValueError):
            Disassembly(SKIPS_INVALID).read_bytes(3, 2)

    def test_block_id_out_of_range(self):
        d = Disassembly(SKIPS_INVALID)
        with pytest.raises(IndexError):
            d.is_block_reachable(-1)
        with pytest.raises(IndexError):
            d.is_block_reachable(3)

    def test_entry_block_always_reachable(self):
        d = Disassembly(SKIPS_INVALID, ConstantStackState)
        d.contexts[0] = ConstantStackState.bottom()
        assert d.is_block_reachable(0)

    def test_get_state_replays_block(self):
        d = _analyse(SKIPS_INVALID)
        assert d.get_state(0) == ConstantStackState.origin()
        assert d.get_state(2).peek(0) == AbstractValue.known(4)

    def test_disassemble_accepts_hex(self):
        assert disassemble("0x600456fe5b00").blocks == Disassembly(SKIPS_INVALID).blocks
        assert disassemble("600456fe5b00").blocks == Disassembly(SKIPS_INVALID).blocks


# ---------------------------------------------------------------------------
# 3. Refinement
# ---------------------------------------------------------------------------

class TestRefine:
    def test_fresh_contexts(self):
        d = Disassembly(SKIPS_INVALID, ConstantStackState)
        assert d.contexts[0] == ConstantStackState.origin()
        assert all(ctx == ConstantStackState.bottom() for ctx in d.contexts[1:])

    def test_entry_context_is_origin(self):
        d = Disassembly(SKIPS_INVALID).refine(ConstantStackState)
        assert d.contexts[0] == ConstantStackState.origin()
        assert not d.contexts[1].is_reachable()

    def test_refined_instance_is_invalidated(self):
        d = Disassembly(SKIPS_INVALID)
        d.refine(ConstantStackState)
        with pytest.raises(ValueError, match="refined"):
            d.to_vec()
        with pytest.raises(ValueError):
            d.build()

    def test_custom_conversion(self):
        d = Disassembly(SKIPS_INVALID).refine(
            ConstantStackState, lambda ctx: ConstantStackState.origin())
        assert all(ctx.is_reachable() for ctx in d.contexts)

    def test_blocks_survive_refinement(self):
        before = Disassembly(EMBEDDED_DATA)
        blocks = list(before.blocks)
        assert before.refine(ConstantStackState).blocks == blocks


# ---------------------------------------------------------------------------
# 4. Fixed point
# ---------------------------------------------------------------------------

class TestBuild:
    def test_unit_domain_reaches_everything(self):
        d = Disassembly(SKIPS_INVALID).build()
        assert _reachable(d) == [0, 1, 2]

    def test_conditional_branch_and_fall_through(self):
        d = _analyse(CONDITIONAL)
        assert _reachable(d) == [0, 1]
        assert d.contexts[1] == ConstantStackState.origin()

    def test_skipped_block_is_unreachable(self):
        d = _analyse(SKIPS_INVALID)
        assert _reachable(d) == [0, 2]

    def test_dynamic_jump_is_not_followed(self):
        d = _analyse(DYNAMIC_JUMP)
        assert _reachable(d) == [0]

    def test_growing_loop_terminates(self):
        d = _analyse(GROWING_LOOP)
        assert _reachable(d) == [0]
        assert d.contexts[0] == ConstantStackState.origin()

    def test_code_after_push0_is_reachable(self):
        d = _analyse(WITH_PUSH0)
        assert _reachable(d) == [0, 1]
        assert d.get_state(3).peek(1) == AbstractValue.known(0)
        assert d.to_vec() == [
            evm.PUSH0,
            Instruction.push(b"\x05"),
            evm.JUMPI,
            evm.INVALID,
            Instruction.jumpdest(5),
            evm.STOP,
        ]

    def test_backward_jump_needs_second_pass(self):
        d = _analyse(BACKWARD_CHAIN)
        assert _reachable(d) == [0, 1, 4]

    def test_reachability_grows_with_passes(self):
        previous = set()
        for limit in range(1, 4):
            d = Disassembly(BACKWARD_CHAIN, UnitState, AnalysisConfig(max_passes=limit)).refine(ConstantStackState)
            try:
                d.build()
            except RuntimeError:
                pass
            current = set(_reachable(d))
            assert previous <= current
            previous = current
        assert previous == {0, 1, 4}

    def test_jump_outside_code_is_ignored(self):
        d = _analyse(bytes.fromhex("60ff56"))
        assert _reachable(d) == [0]

    @pytest.mark.parametrize("code", SAMPLES)
    def test_build_is_idempotent(self, code):
        d = _analyse(code)
        before = [ctx.copy() for ctx in d.contexts]
        d.build()
        assert d.contexts == before

    @pytest.mark.parametrize("code", SAMPLES)
    def test_refinement_only_removes_reachability(self, code):
        coarse = set(_reachable(Disassembly(code).build()))
        fine = set(_reachable(_analyse(code)))
        assert fine <= coarse

    def test_max_passes_exceeded(self):
        with pytest.raises(RuntimeError, match="fixed point"):
            _analyse(SKIPS_INVALID, AnalysisConfig(max_passes=1))

    def test_max_passes_sufficient(self):
        d = _analyse(SKIPS_INVALID, AnalysisConfig(max_passes=2))
        assert _reachable(d) == [0, 2]

    def test_trace_logs_block_contexts(self, caplog):
        caplog.set_level(logging.DEBUG, logger="evmil.analysis.disassembler")
        _analyse(SKIPS_INVALID, AnalysisConfig(trace=True))
        assert "Block 0" in caplog.text
        assert "Fixed point after" in caplog.text


# ---------------------------------------------------------------------------
# 5. Flattening
# ---------------------------------------------------------------------------

class TestToVec:
    def test_unit_domain_matches_linear_decode(self):
        for code in SAMPLES:
            assert Disassembly(code).build().to_vec() == decode_all(code)

    def test_unreachable_block_becomes_data(self):
        assert _analyse(SKIPS_INVALID).to_vec() == [
            Instruction.push(b"\x04"),
            evm.JUMP,
            Instruction.raw(b"\xfe"),
            Instruction.jumpdest(4),
            evm.STOP,
        ]

    def test_embedded_data(self):
        assert _analyse(EMBEDDED_DATA).to_vec() == [
            Instruction.push(b"\x05"),
            evm.JUMP,
            Instruction.raw(b"\xaa"),
            Instruction.raw(b"\xbb"),
            Instruction.jumpdest(5),
            evm.STOP,
        ]

    @pytest.mark.parametrize("code", SAMPLES)
    def test_flattened_code_reencodes(self, code):
        insns = _analyse(code).to_vec()
        assert b"".join(insn.encode() for insn in insns) == code
