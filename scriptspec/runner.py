"""Run configuration and script discovery.

Typical use from a test suite::

    from scriptspec import testscript

    def test_cli():
        (
            testscript("testdata")
            .setup(build_binary)
            .command("greet", greet)
            .condition("docker", has_docker())
            .execute()
        )
"""

import logging
import os
import sys
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from .conditions import Probes, default_conditions
from .environment import TestEnvironment
from .errors import GenericError, ParseError, ScriptError, ScriptSpecError
from .interpreter import CommandFn, Interpreter, RunOutcome, RunState
from .parser import parse
from .updater import write_updates

logger = logging.getLogger(__name__)

SetupFn = Callable[[TestEnvironment], None]

TRUTHY = ("1", "true")


def env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in TRUTHY


class RunParams:
    """Configuration shared by every script of a run."""

    def __init__(self, probe_network: bool = True):
        self.commands: dict[str, CommandFn] = {}
        self.setup_fn: Optional[SetupFn] = None
        self.conditions: dict[str, bool] = default_conditions(probe_network)
        self.update_scripts: bool = env_flag("UPDATE_SCRIPTS")
        self.preserve_work_on_failure: bool = False
        self.workdir_root: Optional[Path] = None
        self.files: Optional[list[str]] = None
        self.probes = Probes()

    def command(self, name: str, func: CommandFn) -> "RunParams":
        self.commands[name] = func
        return self

    def setup(self, func: SetupFn) -> "RunParams":
        self.setup_fn = func
        return self

    def condition(self, name: str, value: bool) -> "RunParams":
        self.conditions[name] = value
        return self

    def with_update_scripts(self, update: bool) -> "RunParams":
        self.update_scripts = update
        return self

    def with_preserve_work_on_failure(self, preserve: bool) -> "RunParams":
        self.preserve_work_on_failure = preserve
        return self

    def with_workdir_root(self, root: Union[str, Path]) -> "RunParams":
        self.workdir_root = Path(root)
        return self

    def with_files(self, files: Iterable[Union[str, Path]]) -> "RunParams":
        self.files = [str(f) for f in files]
        return self


def discover_scripts(directory: Union[str, Path]) -> list[Path]:
    """All ``*.txt`` files directly inside ``directory``, sorted by name."""
    directory = Path(directory)
    scripts = sorted(p for p in directory.glob("*.txt") if p.is_file())
    if not scripts:
        raise GenericError(f"No test files found matching pattern: {directory}/*.txt")
    return scripts


def resolve_files(directory: Union[str, Path], files: list[str]) -> list[Path]:
    """Resolve explicitly selected scripts against ``directory``, then the cwd."""
    if not files:
        raise GenericError("No test files specified")

    resolved = []
    for name in files:
        path = Path(name)
        if not path.is_absolute() and (Path(directory) / path).exists():
            path = Path(directory) / path
        if not path.exists():
            raise GenericError(f"Test file not found: {name}")
        if not path.is_file():
            raise GenericError(f"Test file is not a regular file: {name}")
        resolved.append(path)
    return resolved


def read_script(script_path: Union[str, Path]) -> str:
    # Bytes in, bytes out: line endings must survive an update rewrite
    try:
        return Path(script_path).read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise GenericError(f"Cannot read test file {script_path}: {e}") from e


def report_preserved(env: TestEnvironment, reason: str):
    preserved = env.preserve_work_dir()
    print(f"Test {reason}. Work directory preserved at: {preserved}", file=sys.stderr)
    print("You can inspect the test environment:", file=sys.stderr)
    print(f"  cd {preserved}", file=sys.stderr)
    print("  ls -la", file=sys.stderr)


def run_script(script_path: Union[str, Path], params: RunParams) -> RunOutcome:
    """Run one script file; raises ScriptSpecError when it fails or skips."""
    script_file = str(script_path)
    text = read_script(script_path)
    try:
        script = parse(text)
    except ParseError as e:
        raise ScriptError.wrap(script_file, e.line, text, e) from e

    env = TestEnvironment(params.workdir_root, name=Path(script_path).stem)
    try:
        env.prepare(script.files)

        if params.setup_fn is not None:
            try:
                params.setup_fn(env)
            except Exception as e:
                raise GenericError(f"Setup failed: {e}") from e

        interpreter = Interpreter(
            env,
            params.conditions,
            params.commands,
            update_mode=params.update_scripts,
            probes=params.probes,
            script_file=script_file,
            script_text=text,
        )
        outcome = interpreter.execute(script)

        if params.update_scripts:
            write_updates(script_path, text, outcome.updates)

        if not outcome.passed and params.preserve_work_on_failure:
            reason = "skipped" if outcome.state is RunState.SKIPPED else "failed"
            report_preserved(env, reason)

        outcome.raise_for_error()
        return outcome
    finally:
        env.close()


def run_test(script_path: Union[str, Path]) -> RunOutcome:
    """Run a single script with default parameters."""
    return run_script(script_path, RunParams())


run_test.__test__ = False  # not a pytest test


class Builder:
    """Fluent surface for configuring and running a directory of scripts."""

    def __init__(self, directory: Union[str, Path], params: Optional[RunParams] = None):
        self.directory = Path(directory)
        self.params = params or RunParams()

    def setup(self, func: SetupFn) -> "Builder":
        self.params.setup(func)
        return self

    def command(self, name: str, func: CommandFn) -> "Builder":
        self.params.command(name, func)
        return self

    def condition(self, name: str, value: bool) -> "Builder":
        self.params.condition(name, value)
        return self

    def update_scripts(self, update: bool) -> "Builder":
        self.params.with_update_scripts(update)
        return self

    def preserve_work_on_failure(self, preserve: bool) -> "Builder":
        self.params.with_preserve_work_on_failure(preserve)
        return self

    def workdir_root(self, root: Union[str, Path]) -> "Builder":
        self.params.with_workdir_root(root)
        return self

    def files(self, files: Iterable[Union[str, Path]]) -> "Builder":
        self.params.with_files(files)
        return self

    def scripts(self) -> list[Path]:
        if self.params.files is not None:
            return resolve_files(self.directory, self.params.files)
        return discover_scripts(self.directory)

    def execute(self):
        """Run every selected script, stopping at the first failure."""
        for script_path in self.scripts():
            logger.debug("running %s", script_path)
            try:
                run_script(script_path, self.params)
            except ScriptSpecError as e:
                raise GenericError(f"Test '{script_path}' failed: {e}") from e


def testscript(directory: Union[str, Path]) -> Builder:
    """Entry point: ``testscript("testdata").execute()``."""
    return Builder(directory)


testscript.__test__ = False  # not a pytest test
