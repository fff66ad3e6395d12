"""
Script engine: static deny-list check plus the isolated subprocess runner.

Exports: ScriptRunner, ScriptDbConfig, validate_script.
"""

from .runner import ScriptDbConfig, ScriptRunner
from .sandbox import validate_script

__all__ = ["ScriptRunner", "ScriptDbConfig", "validate_script"]
