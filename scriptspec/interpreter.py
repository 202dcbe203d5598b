"""Command interpreter.

Walks a parsed ``Script`` in source order against one ``TestEnvironment``::

    Running --(command fails)----------> Failed
    Running --(skip)-------------------> Skipped   (failing)
    Running --(stop)-------------------> Stopped   (passing)
    Running --(all commands consumed)--> Completed (passing)

In update mode a stdout/stderr mismatch does not fail the run: the actual
output is recorded as a ``ScriptUpdate`` and execution continues.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional, Union

from .commands import BUILTIN_COMMANDS
from .conditions import Probes, resolve_condition
from .environment import TestEnvironment
from .errors import (
    CommandError,
    OutputCompareError,
    ParseError,
    ScriptError,
    ScriptSpecError,
    SkipError,
    UnknownCommandError,
)
from .parser import Command, Script, parse

logger = logging.getLogger(__name__)

CommandFn = Callable[[TestEnvironment, list[str]], None]

UPDATABLE_COMMANDS = ("stdout", "stderr")


class RunState(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ScriptUpdate:
    line_num: int
    command_name: str
    new_output: str


@dataclass
class RunOutcome:
    state: RunState = RunState.RUNNING
    error: Optional[ScriptError] = None
    updates: list[ScriptUpdate] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.state in (RunState.COMPLETED, RunState.STOPPED)

    def raise_for_error(self):
        if self.error is not None:
            raise self.error


def run_custom(handler: CommandFn, env: TestEnvironment, command: Command):
    """Call a caller-registered handler; any exception it raises is a command failure."""
    try:
        handler(env, list(command.args))
    except ScriptSpecError:
        raise
    except Exception as e:
        raise CommandError(command.name, str(e) or type(e).__name__) from e


def execute_command(
    env: TestEnvironment,
    command: Command,
    commands: Optional[Mapping[str, CommandFn]] = None,
):
    """Dispatch one command, applying negation to its outcome.

    Caller-registered commands take precedence over built-ins.
    """
    custom = (commands or {}).get(command.name)
    builtin = BUILTIN_COMMANDS.get(command.name)

    try:
        if custom is not None:
            run_custom(custom, env, command)
        elif builtin is not None:
            builtin(env, command)
        else:
            raise UnknownCommandError(command.name)
    except ScriptSpecError as e:
        if not command.negated:
            raise
        logger.debug("line %d: negated command failed as expected: %s", command.line_num, e)
        return

    if command.negated:
        raise CommandError(command.name, "Command was expected to fail but succeeded")


class Interpreter:
    def __init__(
        self,
        env: TestEnvironment,
        conditions: Mapping[str, bool],
        commands: Optional[Mapping[str, CommandFn]] = None,
        update_mode: bool = False,
        probes: Optional[Probes] = None,
        script_file: str = "<script>",
        script_text: str = "",
    ):
        self.env = env
        self.conditions = conditions
        self.commands = commands or {}
        self.update_mode = update_mode
        self.probes = probes or Probes()
        self.script_file = script_file
        self.script_text = script_text
        # Source line of the `exec ... &` that registered each background name
        self.background_lines: dict[str, int] = {}

    def wrap(self, line_num: int, error: ScriptSpecError) -> ScriptError:
        return ScriptError.wrap(self.script_file, line_num, self.script_text, error)

    def condition_met(self, command: Command) -> bool:
        if command.condition is None:
            return True
        return resolve_condition(command.condition, self.conditions, self.probes)

    def execute(self, script: Script) -> RunOutcome:
        outcome = RunOutcome()

        for command in script.commands:
            try:
                if not self.condition_met(command):
                    logger.debug(
                        "line %d: skipping '%s', [%s] is false",
                        command.line_num,
                        command.name,
                        command.condition,
                    )
                    continue
                logger.debug("line %d: %s", command.line_num, command.to_str())
                execute_command(self.env, command, self.commands)
            except OutputCompareError as e:
                if self.update_mode and command.name in UPDATABLE_COMMANDS:
                    logger.debug("line %d: recording updated %s", command.line_num, command.name)
                    outcome.updates.append(
                        ScriptUpdate(command.line_num, command.name, e.actual)
                    )
                    continue
                outcome.state = RunState.FAILED
                outcome.error = self.wrap(command.line_num, e)
                return outcome
            except ScriptSpecError as e:
                skipped = isinstance(e, SkipError)
                outcome.state = RunState.SKIPPED if skipped else RunState.FAILED
                outcome.error = self.wrap(command.line_num, e)
                return outcome

            if command.name == "exec" and command.background and command.args:
                self.background_lines[command.args[0]] = command.line_num

            if self.env.should_skip:
                outcome.state = RunState.SKIPPED
                outcome.error = self.wrap(command.line_num, SkipError())
                return outcome
            if self.env.should_stop:
                outcome.state = RunState.STOPPED
                break

        error = self.wait_background()
        if error is not None:
            outcome.state = RunState.FAILED
            outcome.error = error
            return outcome

        if outcome.state is RunState.RUNNING:
            outcome.state = RunState.COMPLETED
        return outcome

    def wait_background(self) -> Optional[ScriptError]:
        """Wait for every background process still registered."""
        for name in list(self.env.background_processes):
            try:
                self.env.wait_background(name)
            except ScriptSpecError as e:
                return self.wrap(self.background_lines.get(name, 0), e)
        return None


def run(
    script_text: Union[str, Script],
    env: TestEnvironment,
    conditions: Mapping[str, bool],
    commands: Optional[Mapping[str, CommandFn]] = None,
    update_mode: bool = False,
    probes: Optional[Probes] = None,
    script_file: str = "<script>",
) -> RunOutcome:
    """Parse and execute a script against ``env``.

    Raises ScriptError on failure or skip; returns the outcome (with any
    pending updates) when the run passes.
    """
    if isinstance(script_text, Script):
        script, text = script_text, script_text.to_text()
    else:
        text = script_text
        try:
            script = parse(text)
        except ParseError as e:
            raise ScriptError.wrap(script_file, e.line, text, e) from e

    env.prepare(script.files)
    interpreter = Interpreter(
        env,
        conditions,
        commands,
        update_mode=update_mode,
        probes=probes,
        script_file=script_file,
        script_text=text,
    )
    outcome = interpreter.execute(script)
    outcome.raise_for_error()
    return outcome
