"""
EVM Bytecode Disassembly and IL Compilation

This package provides two halves of an EVM toolchain:

  - ``evmil.analysis``: splits raw bytecode into basic blocks and refines
    which of them are reachable code using abstract interpretation.
  - ``evmil.compiler``: lowers a small intermediate language into EVM
    instructions, assembled into bytecode by ``evmil.bytecode``.
"""

from evmil.analysis import ConstantStackState, Disassembly, InvalidAddressError, UnitState, disassemble
from evmil.bytecode import AssemblyError, Bytecode
from evmil.compiler import Compiler, CompilerError, CompilerErrorKind
from evmil.config import AnalysisConfig, CompilerConfig, load_config
from evmil.instruction import Instruction, decode, decode_all

__version__ = "1.0.0"
__author__ = "EVM IL Team"

__all__ = [
    "AnalysisConfig",
    "AssemblyError",
    "Bytecode",
    "Compiler",
    "CompilerConfig",
    "CompilerError",
    "CompilerErrorKind",
    "ConstantStackState",
    "Disassembly",
    "Instruction",
    "InvalidAddressError",
    "UnitState",
    "decode",
    "decode_all",
    "disassemble",
    "load_config",
]
