"""
Configuration

Settings for the analysis engine and the compiler.  Defaults match the EVM;
a YAML settings file can override them:

    analysis:
      max_passes: 100
      trace: true
    compiler:
      word_size: 32
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


@dataclass
class AnalysisConfig:
    """Configuration for the fixed-point analysis."""
    max_passes: Optional[int] = None  # None iterates until nothing changes
    trace: bool = False  # log every block's entry context at DEBUG level

    def __post_init__(self):
        if self.max_passes is not None and self.max_passes < 1:
            raise ValueError(f"max_passes must be positive, got {self.max_passes}")


@dataclass
class CompilerConfig:
    """Configuration for the IL compiler."""
    word_size: int = 32  # bytes in a machine word
    slot_size: int = 32  # stride between return/revert values in memory

    def __post_init__(self):
        if not 1 <= self.word_size <= 32:
            raise ValueError(f"word_size must be between 1 and 32, got {self.word_size}")
        if self.slot_size < 1:
            raise ValueError(f"slot_size must be positive, got {self.slot_size}")


@dataclass
class EvmilConfig:
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    compiler: CompilerConfig = field(default_factory=CompilerConfig)


def _build_section(cls, section: Optional[Dict[str, Any]]):
    section = section or {}
    if not isinstance(section, dict):
        raise ValueError(f"{cls.__name__} settings must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} settings: {sorted(unknown)}")
    return cls(**section)


def load_config(path: Union[str, Path]) -> EvmilConfig:
    """
    Load settings from a YAML file.

    Args:
        path: Path to the settings file

    Returns:
        Parsed configuration (missing sections use defaults)
    """
    with open(path, 'r') as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    unknown = set(raw) - {'analysis', 'compiler'}
    if unknown:
        raise ValueError(f"Unknown settings sections: {sorted(unknown)}")

    return EvmilConfig(
        analysis=_build_section(AnalysisConfig, raw.get('analysis')),
        compiler=_build_section(CompilerConfig, raw.get('compiler')),
    )
