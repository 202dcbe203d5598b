"""Script-driven testing of command-line programs.

Each test is a txtar-style text file: a list of commands to run in an isolated
work directory, followed by the files that directory starts with.
"""

from .conditions import Probes, default_conditions, resolve_condition
from .environment import ProcessOutput, TestEnvironment, substitute_env_vars
from .errors import (
    CommandError,
    FileCompareError,
    GenericError,
    OutputCompareError,
    ParseError,
    ScriptError,
    ScriptSpecError,
    SkipError,
    UnknownCommandError,
    UnknownConditionError,
)
from .interpreter import RunOutcome, RunState, ScriptUpdate, execute_command, run
from .parser import Command, Script, TxtarFile, parse, tokenize
from .runner import Builder, RunParams, discover_scripts, run_script, run_test, testscript
from .updater import apply_updates, update

__version__ = "0.1.0"

__all__ = [
    "Builder",
    "Command",
    "CommandError",
    "FileCompareError",
    "GenericError",
    "OutputCompareError",
    "ParseError",
    "ProcessOutput",
    "Probes",
    "RunOutcome",
    "RunParams",
    "RunState",
    "Script",
    "ScriptError",
    "ScriptSpecError",
    "ScriptUpdate",
    "SkipError",
    "TestEnvironment",
    "TxtarFile",
    "UnknownCommandError",
    "UnknownConditionError",
    "apply_updates",
    "default_conditions",
    "discover_scripts",
    "execute_command",
    "parse",
    "resolve_condition",
    "run",
    "run_script",
    "run_test",
    "substitute_env_vars",
    "testscript",
    "tokenize",
    "update",
]
