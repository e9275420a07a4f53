"""
Tests for evmil/instruction.py

Covers:
  - Instruction constructors and their validation
  - Encoded lengths and encoding
  - Stack effects from the pyevmasm tables
  - Decoding (pushes, jump destinations, truncated immediates, unknown opcodes)
"""

import pytest

from evmil import instruction as evm
from evmil.instruction import Instruction, decode, decode_all


# ---------------------------------------------------------------------------
# 1. Constructors
# ---------------------------------------------------------------------------

class TestConstructors:
    def test_push_keeps_bytes(self):
        insn = Instruction.push(b"\x01\x02")
        assert insn.name == 'PUSH'
        assert insn.data == b"\x01\x02"
        assert insn.value == 0x0102

    def test_push_empty_rejected(self):
        with pytest.raises(ValueError):
            Instruction.push(b"")

    def test_push_too_wide_rejected(self):
        with pytest.raises(ValueError):
            Instruction.push(bytes(33))

    def test_push_full_word(self):
        assert Instruction.push(b"\xff" * 32).length == 33

    def test_dup_swap_bounds(self):
        assert Instruction.dup(1).name == 'DUP1'
        assert Instruction.swap(16).name == 'SWAP16'
        with pytest.raises(ValueError):
            Instruction.dup(0)
        with pytest.raises(ValueError):
            Instruction.swap(17)

    def test_value_only_for_push(self):
        assert evm.ADD.value is None

    def test_instructions_are_values(self):
        assert Instruction.jumpdest(3) == Instruction.jumpdest(3)
        assert Instruction.jumpdest(3) != Instruction.jumpdest(4)


# ---------------------------------------------------------------------------
# 2. Lengths and encoding
# ---------------------------------------------------------------------------

class TestEncoding:
    def test_lengths(self):
        assert evm.ADD.length == 1
        assert Instruction.push(b"\x01").length == 2
        assert Instruction.push_label(0).length == 3
        assert Instruction.jumpdest(0).length == 1
        assert Instruction.raw(b"\xaa\xbb\xcc").length == 3

    def test_encode_push(self):
        assert Instruction.push(b"\x01").encode() == b"\x60\x01"
        assert Instruction.push(bytes(32)).encode()[0] == 0x7f

    def test_encode_plain_opcodes(self):
        assert evm.ADD.encode() == b"\x01"
        assert evm.JUMPI.encode() == b"\x57"
        assert evm.INVALID.encode() == b"\xfe"
        assert Instruction.jumpdest(7).encode() == b"\x5b"

    def test_encode_data_is_verbatim(self):
        assert Instruction.raw(b"\xaa\xbb").encode() == b"\xaa\xbb"

    def test_encode_label_push_fails(self):
        with pytest.raises(ValueError, match="label"):
            Instruction.push_label(0).encode()

    def test_str(self):
        assert str(Instruction.push(b"\x01")) == "PUSH1 0x01"
        assert str(Instruction.jumpdest(3)) == "JUMPDEST(3)"
        assert str(Instruction.raw(b"\xaa\xbb")) == "DATA 0xaabb"
        assert str(evm.STOP) == "STOP"


# ---------------------------------------------------------------------------
# 3. Classification and stack effects
# ---------------------------------------------------------------------------

class TestClassification:
    def test_terminators(self):
        for insn in (evm.JUMP, evm.RETURN, evm.REVERT, evm.STOP, evm.INVALID):
            assert insn.is_terminator()

    def test_jumpi_is_not_a_terminator(self):
        assert not evm.JUMPI.is_terminator()
        assert evm.JUMPI.can_branch()

    def test_only_jumps_branch(self):
        assert evm.JUMP.can_branch()
        assert not evm.ADD.can_branch()
        assert not Instruction.jumpdest(0).can_branch()

    def test_stack_effects(self):
        assert evm.ADD.stack_effect() == (2, 1)
        assert evm.JUMPI.stack_effect() == (2, 0)
        assert evm.ISZERO.stack_effect() == (1, 1)
        assert Instruction.push(b"\x01").stack_effect() == (0, 1)
        assert Instruction.push_label(0).stack_effect() == (0, 1)
        assert Instruction.jumpdest(0).stack_effect() == (0, 0)

    def test_unknown_mnemonic(self):
        with pytest.raises(ValueError, match="Unknown EVM instruction"):
            Instruction('NOTANOPCODE').stack_effect()


# ---------------------------------------------------------------------------
# 4. Decoding
# ---------------------------------------------------------------------------

class TestDecode:
    def test_decode_push(self):
        insn = decode(0, bytes.fromhex("6001"))
        assert insn == Instruction.push(b"\x01")
        assert insn.length == 2

    def test_decode_at_offset(self):
        assert decode(2, bytes.fromhex("600101")) == evm.ADD

    def test_jumpdest_label_is_offset(self):
        assert decode(2, bytes.fromhex("60015b")) == Instruction.jumpdest(2)

    def test_truncated_push_reads_zeros(self):
        insn = decode(0, bytes.fromhex("61ff"))
        assert insn == Instruction.push(b"\xff\x00")
        assert insn.length == 3

    def test_unknown_opcode_is_invalid(self):
        assert decode(0, bytes.fromhex("0c")).name == 'INVALID'

    def test_out_of_range(self):
        with pytest.raises(IndexError):
            decode(1, b"\x00")

    def test_decode_all(self):
        insns = decode_all(bytes.fromhex("600160020100"))
        assert insns == [
            Instruction.push(b"\x01"),
            Instruction.push(b"\x02"),
            evm.ADD,
            evm.STOP,
        ]

    def test_decode_all_empty(self):
        assert decode_all(b"") == []

    def test_push0(self):
        insn = decode(0, bytes.fromhex("5f"))
        assert insn == evm.PUSH0
        assert insn.value == 0
        assert insn.length == 1
        assert insn.stack_effect() == (0, 1)
        assert insn.encode() == b"\x5f"
        assert not insn.is_terminator()

    def test_push0_does_not_end_decoding(self):
        assert decode_all(bytes.fromhex("5f5f5600")) == [evm.PUSH0, evm.PUSH0, evm.JUMP, evm.STOP]

    def test_decode_encode_agree(self):
        code = bytes.fromhex("6080604052600436106100365760003560e00480")
        assert b"".join(insn.encode() for insn in decode_all(code)) == code
