"""Per-script execution environment.

A ``TestEnvironment`` owns an isolated working directory, the variable map
handed to spawned processes, the output of the last process, pending stdin and
the table of background processes. It is closed (directory removed, leftover
children killed) when the run ends, unless the directory was preserved.
"""

import logging
import os
import re
import shutil
import signal
import stat
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

import pexpect

from .errors import CommandError, FileCompareError, GenericError, OutputCompareError
from .parser import TxtarFile, split_lines

logger = logging.getLogger(__name__)

# Any of these in an expected stdout/stderr value switches to regex matching
REGEX_MARKERS = "^$[(*."

# Seconds a signalled background process gets to exit before it is killed
KILL_GRACE_PERIOD = 5.0

STREAMS = ("stdout", "stderr")


@dataclass
class ProcessOutput:
    stdout: bytes
    stderr: bytes
    returncode: int

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def stream(self, name: str) -> bytes:
        return self.stdout if name == "stdout" else self.stderr

    def text(self, name: str) -> str:
        return self.stream(name).decode("utf-8", "replace").rstrip()


def sanitize_test_name(name: str) -> str:
    """Sanitize test name for use as directory name."""
    return re.sub(r"[^a-zA-Z0-9]", "_", name)


def create_test_directory(base_dir: Optional[Union[str, Path]], test_name: str) -> Path:
    """Create a unique test directory for a test case."""
    prefix = f"{sanitize_test_name(test_name)}-"
    return Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir))


def substitute_env_vars(
    text: str, env_vars: Mapping[str, str], regex_quote: bool = True
) -> str:
    """Replace ``${NAME@R}``, ``${NAME}`` and ``$NAME`` with variable values.

    ``${NAME@R}`` inserts the regex-escaped value and is handled first. Longer
    names are substituted before their prefixes so ``$FOOBAR`` is never read
    as ``$FOO`` followed by ``BAR``. ``$$`` collapses to a literal ``$``.
    """
    names = sorted(env_vars, key=len, reverse=True)

    if regex_quote:
        for name in names:
            text = text.replace(f"${{{name}@R}}", re.escape(env_vars[name]))

    for name in names:
        value = env_vars[name]
        text = text.replace(f"${{{name}}}", value)
        text = text.replace(f"${name}", value)

    return text.replace("$$", "$")


class TestEnvironment:
    __test__ = False  # not a pytest test class

    def __init__(
        self,
        workdir_root: Optional[Union[str, Path]] = None,
        name: str = "scriptspec",
    ):
        if workdir_root is not None:
            root = Path(workdir_root)
            if not root.exists():
                raise GenericError(f"Workdir root directory does not exist: {root}")
            if not root.is_dir():
                raise GenericError(f"Workdir root path is not a directory: {root}")
        try:
            self.work_dir = create_test_directory(workdir_root, name)
        except OSError as e:
            raise GenericError(
                f"Cannot create temporary directory in workdir root {workdir_root}: {e}"
            ) from e

        self.current_dir = self.work_dir
        self.env_vars: dict[str, str] = {}
        self.last_output: Optional[ProcessOutput] = None
        self.background_processes: dict[str, subprocess.Popen] = {}
        self.next_stdin: Optional[bytes] = None
        self.should_skip = False
        self.should_stop = False
        self._orphans: list[subprocess.Popen] = []
        self._preserved = False
        self._closed = False

    def __enter__(self) -> "TestEnvironment":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Kill leftover children and remove the work directory unless preserved."""
        if self._closed:
            return
        self._closed = True

        for proc in list(self.background_processes.values()) + self._orphans:
            if proc.poll() is None:
                logger.debug("killing leftover process %s", proc.pid)
                proc.kill()
            proc.communicate()
        self.background_processes.clear()
        self._orphans.clear()

        if not self._preserved:
            remove_tree(self.work_dir)

    def preserve_work_dir(self) -> Path:
        """Hand the work directory over to the caller; it is no longer deleted."""
        self._preserved = True
        logger.warning("work directory preserved at %s", self.work_dir)
        return self.work_dir

    def path(self, name: str) -> Path:
        return self.work_dir / name

    def setup_files(self, files: list[TxtarFile]):
        """Materialize embedded files under the work directory"""
        for file in files:
            file_path = self.path(file.name)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(file.contents)

    def prepare(self, files: list[TxtarFile]):
        """Write the script's embedded files and export $WORK"""
        self.setup_files(files)
        self.set_env_var("WORK", str(self.work_dir))

    def set_env_var(self, key: str, value: str):
        self.env_vars[key] = value

    def substitute_env_vars(self, text: str, regex_quote: bool = True) -> str:
        return substitute_env_vars(text, self.env_vars, regex_quote)

    def process_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env_vars)
        return env

    def resolve_program(self, program: str, env: Mapping[str, str]) -> str:
        if os.sep in program or "/" in program:
            # Relative paths are resolved by the child against current_dir
            return program
        resolved = pexpect.which(program, env=env)
        if resolved is None:
            raise CommandError("exec", f"Executable not found: {program}")
        return resolved

    # -- processes -------------------------------------------------------

    def execute(self, program: str, args: list[str]) -> ProcessOutput:
        """Run a process in the foreground and record its output."""
        env = self.process_env()
        cmd_line = [self.resolve_program(program, env)] + list(args)

        stdin_content, self.next_stdin = self.next_stdin, None
        logger.debug("exec %s (cwd=%s)", cmd_line, self.current_dir)
        try:
            result = subprocess.run(
                cmd_line,
                input=stdin_content,
                stdin=subprocess.DEVNULL if stdin_content is None else None,
                capture_output=True,
                cwd=self.current_dir,
                env=env,
            )
        except OSError as e:
            raise CommandError("exec", f"Cannot run '{program}': {e}") from e

        output = ProcessOutput(result.stdout, result.stderr, result.returncode)
        self.last_output = output
        return output

    def start_background(self, name: str, program: str, args: list[str]):
        env = self.process_env()
        cmd_line = [self.resolve_program(program, env)] + list(args)

        previous = self.background_processes.get(name)
        if previous is not None and previous.poll() is None:
            logger.warning(
                "background process '%s' re-registered while pid %s is still running",
                name,
                previous.pid,
            )
        if previous is not None:
            self._orphans.append(previous)

        stdin_content, self.next_stdin = self.next_stdin, None
        logger.debug("exec %s & (cwd=%s)", cmd_line, self.current_dir)
        # Pending stdin is spooled to a file so a child that never reads it cannot block us
        with tempfile.TemporaryFile() as stdin_file:
            if stdin_content is not None:
                stdin_file.write(stdin_content)
                stdin_file.seek(0)
            try:
                proc = subprocess.Popen(
                    cmd_line,
                    stdin=subprocess.DEVNULL if stdin_content is None else stdin_file,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=self.current_dir,
                    env=env,
                )
            except OSError as e:
                raise CommandError("exec", f"Cannot run '{program}': {e}") from e
        self.background_processes[name] = proc

    def _take_background(self, command: str, name: str) -> subprocess.Popen:
        proc = self.background_processes.pop(name, None)
        if proc is None:
            raise CommandError(command, f"No background process named '{name}'")
        return proc

    def wait_background(self, name: str) -> ProcessOutput:
        proc = self._take_background("wait", name)
        logger.debug("waiting for background process '%s' (pid %s)", name, proc.pid)
        stdout, stderr = proc.communicate()
        output = ProcessOutput(stdout, stderr, proc.returncode)
        self.last_output = output
        return output

    def kill_background(self, name: str, signal_spec: Optional[str] = None):
        sig = parse_signal(signal_spec) if signal_spec else None
        proc = self._take_background("kill", name)
        logger.debug("killing background process '%s' (pid %s)", name, proc.pid)
        if proc.poll() is None:
            if sig is None:
                proc.kill()
            else:
                proc.send_signal(sig)
        try:
            stdout, stderr = proc.communicate(timeout=KILL_GRACE_PERIOD)
        except subprocess.TimeoutExpired:
            logger.debug("background process '%s' ignored %s, killing it", name, signal_spec)
            proc.kill()
            stdout, stderr = proc.communicate()
        self.last_output = ProcessOutput(stdout, stderr, proc.returncode)

    # -- assertions -------------------------------------------------------

    def read_source(self, command: str, name: str) -> bytes:
        """Read a file under the work directory, or the last stdout/stderr."""
        if name in STREAMS:
            if self.last_output is None:
                raise CommandError(command, f"No {name} available")
            return self.last_output.stream(name)
        try:
            return self.path(name).read_bytes()
        except OSError as e:
            raise CommandError(command, f"Cannot read '{name}': {e}") from e

    def compare_files(self, file1: str, file2: str):
        contents1 = self.read_source("cmp", file1)
        contents2 = self.read_source("cmp", file2)
        if contents1 != contents2:
            raise FileCompareError(
                f"Files differ:\n'{file1}' contains:\n{_lossy(contents1)}\n\n"
                f"'{file2}' contains:\n{_lossy(contents2)}"
            )

    def compare_files_with_env(self, file1: str, file2: str):
        contents1 = _lossy(self.read_source("cmpenv", file1))
        contents2 = self.substitute_env_vars(
            _lossy(self.read_source("cmpenv", file2)), regex_quote=False
        )
        if contents1.strip() != contents2.strip():
            raise FileCompareError(
                "Files differ after environment substitution:\n"
                f"'{file1}' contains:\n{contents1}\n\n"
                f"'{file2}' (after substitution) contains:\n{contents2}"
            )

    def compare_output(self, stream: str, expected: str):
        """Match the last captured stream against an expected value or regex."""
        if self.last_output is None:
            raise CommandError(stream, "No command output available")
        actual = self.last_output.text(stream)
        expected = self.substitute_env_vars(expected)

        if any(marker in expected for marker in REGEX_MARKERS):
            try:
                pattern = re.compile(expected, re.DOTALL)
            except re.error as e:
                raise CommandError(stream, f"Invalid regex: {e}") from e
            if not pattern.search(actual):
                raise OutputCompareError(expected, actual)
        elif actual != expected:
            raise OutputCompareError(expected, actual)

    # -- filesystem -------------------------------------------------------

    def change_directory(self, path: str):
        if os.path.isabs(path) or path.startswith(("/", "\\")) or ":" in path:
            raise CommandError("cd", "Absolute paths not allowed")
        new_dir = self.path(path)
        if not new_dir.exists():
            raise CommandError("cd", f"Directory '{path}' does not exist")
        if not new_dir.is_dir():
            raise CommandError("cd", f"'{path}' is not a directory")
        self.current_dir = new_dir

    def file_exists(self, path: str) -> bool:
        if path in STREAMS:
            return self.last_output is not None
        return self.path(path).exists()

    def is_readonly(self, path: str) -> bool:
        try:
            mode = self.path(path).stat().st_mode
        except OSError:
            return False
        return not mode & (stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)

    def create_directories(self, paths: list[str]):
        for path in paths:
            try:
                self.path(path).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CommandError("mkdir", f"Cannot create '{path}': {e}") from e

    def copy_files(self, sources: list[str], dest: str):
        dest_path = self.path(dest)
        for source in sources:
            content = self.read_source("cp", source)
            target = dest_path
            if dest_path.is_dir():
                target = dest_path / (source if source in STREAMS else Path(source).name)
            try:
                target.write_bytes(content)
            except OSError as e:
                raise CommandError("cp", f"Cannot write '{dest}': {e}") from e

    def remove_files(self, paths: list[str]):
        for path in paths:
            full_path = self.path(path)
            try:
                if full_path.is_symlink() or full_path.is_file():
                    full_path.unlink()
                elif full_path.is_dir():
                    remove_tree(full_path)
            except OSError as e:
                raise CommandError("rm", f"Cannot remove '{path}': {e}") from e

    def move_file(self, source: str, dest: str):
        source_path = self.path(source)
        if not os.path.lexists(source_path):
            raise CommandError("mv", f"Source '{source}' does not exist")
        try:
            os.replace(source_path, self.path(dest))
        except OSError as e:
            raise CommandError(
                "mv", f"Cannot move '{source}' to '{dest}': {e}"
            ) from e

    def set_stdin_from_file(self, name: str):
        self.next_stdin = self.read_source("stdin", name)

    def change_permissions(self, mode: str, path: str):
        if not re.fullmatch(r"[0-7]+", mode) or int(mode, 8) > 0o7777:
            raise CommandError("chmod", f"Invalid mode: {mode}")
        mode_int = int(mode, 8)

        if os.name == "nt":
            # Only the owner write bit is honored: approximate with read-only
            mode_int = stat.S_IREAD if not mode_int & 0o200 else stat.S_IREAD | stat.S_IWRITE
        try:
            os.chmod(self.path(path), mode_int)
        except OSError as e:
            raise CommandError(
                "chmod", f"Cannot set permissions for '{path}': {e}"
            ) from e

    def create_symlink(self, target: str, link_name: str):
        link_path = self.path(link_name)
        target_path = self.path(target)
        target_is_dir = target_path.is_dir()
        if os.name == "nt" and target_is_dir:
            raise CommandError(
                "symlink",
                "Symlinks on Windows are only supported for files, not directories",
            )
        try:
            os.symlink(target_path, link_path, target_is_directory=target_is_dir)
        except (OSError, NotImplementedError) as e:
            raise CommandError(
                "symlink", f"Cannot create symlink '{link_name}' -> '{target}': {e}"
            ) from e

    def unquote_file(self, path: str):
        file_path = self.path(path)
        try:
            contents = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise CommandError("unquote", f"Cannot read '{path}': {e}") from e

        lines = [line[1:] if line.startswith(">") else line for line in split_lines(contents)]
        try:
            file_path.write_text("\n".join(lines), encoding="utf-8")
        except OSError as e:
            raise CommandError("unquote", f"Cannot write '{path}': {e}") from e

    def grep_files(self, pattern: str, paths: list[str]):
        """Search files line by line; matches become a successful last output."""
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise CommandError("grep", f"Invalid regex: {e}") from e

        matches = []
        for path in paths:
            try:
                contents = self.path(path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise CommandError("grep", f"Cannot read '{path}': {e}") from e
            for line_num, line in enumerate(split_lines(contents), 1):
                if regex.search(line):
                    matches.append(f"{path}:{line_num}: {line}")

        stdout = "\n".join(matches).rstrip().encode("utf-8")
        self.last_output = ProcessOutput(stdout, b"", 0)


def parse_signal(spec: str) -> signal.Signals:
    """Parse ``-INT``, ``-SIGINT`` or ``-9`` into a signal."""
    name = spec.lstrip("-")
    if name.isdigit():
        try:
            return signal.Signals(int(name))
        except ValueError:
            raise CommandError("kill", f"Unknown signal: {spec}") from None
    name = name.upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return signal.Signals[name]
    except KeyError:
        raise CommandError("kill", f"Unknown signal: {spec}") from None


def _lossy(data: bytes) -> str:
    return data.decode("utf-8", "replace")


def _force_remove(func, path, exc):
    # Entries made read-only by chmod: restore write access on the entry and its parent
    os.chmod(os.path.dirname(path), stat.S_IRWXU)
    if not os.path.islink(path):
        os.chmod(path, stat.S_IRWXU)
    func(path)


def remove_tree(path: Path):
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_force_remove)
    else:
        shutil.rmtree(path, onerror=_force_remove)
