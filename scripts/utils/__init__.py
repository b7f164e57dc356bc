"""
Utility modules for the Mutant build pipeline
"""

from .process import CommandResult, run_command

__all__ = [
    "CommandResult",
    "run_command",
]
