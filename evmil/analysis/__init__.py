"""
Bytecode analysis: block discovery and abstract interpretation.
"""

from evmil.analysis.disassembler import Block, Disassembly, InvalidAddressError, disassemble
from evmil.analysis.stack import ConstantStackState
from evmil.analysis.state import UNKNOWN, AbstractState, AbstractValue, UnitState

__all__ = [
    "AbstractState",
    "AbstractValue",
    "Block",
    "ConstantStackState",
    "Disassembly",
    "InvalidAddressError",
    "UNKNOWN",
    "UnitState",
    "disassemble",
]
