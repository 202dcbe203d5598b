"""Built-in script commands.

Each built-in takes the environment and the parsed command, checks its
arguments and raises a ``ScriptSpecError`` to fail. Verb names, arity and
failure wording are what existing scripts rely on.
"""

import logging
from typing import Callable

from .environment import TestEnvironment
from .errors import CommandError, SkipError
from .parser import Command

logger = logging.getLogger(__name__)

BuiltinFn = Callable[[TestEnvironment, Command], None]


def expect_args(command: Command, count: int):
    if len(command.args) != count:
        noun = "argument" if count == 1 else "arguments"
        raise CommandError(command.name, f"Expected exactly {count} {noun}")


def expect_min_args(command: Command, count: int):
    if len(command.args) < count:
        noun = "argument" if count == 1 else "arguments"
        raise CommandError(command.name, f"Expected at least {count} {noun}")


def cmd_exec(env: TestEnvironment, command: Command):
    if not command.args:
        raise CommandError("exec", "No command specified")

    program, args = command.args[0], command.args[1:]
    if command.background:
        # Background processes are named after the program
        env.start_background(program, program, args)
        return

    output = env.execute(program, args)
    if not output.success:
        stderr = output.stderr.decode("utf-8", "replace").strip()
        raise CommandError(
            "exec",
            f"Command '{program}' failed with exit code {output.returncode}: {stderr}",
        )


def cmd_cmp(env: TestEnvironment, command: Command):
    expect_args(command, 2)
    env.compare_files(command.args[0], command.args[1])


def cmd_cmpenv(env: TestEnvironment, command: Command):
    expect_args(command, 2)
    env.compare_files_with_env(command.args[0], command.args[1])


def cmd_output(env: TestEnvironment, command: Command):
    """stdout/stderr: the argument is ``-`` (empty), a file name, or literal text."""
    expect_args(command, 1)
    expected = command.args[0]

    if expected == "-":
        expected_content = ""
    else:
        try:
            expected_content = env.path(expected).read_text(encoding="utf-8").rstrip()
        except (OSError, ValueError):
            # Not a readable file (or not even a valid path): literal text
            expected_content = expected

    env.compare_output(command.name, expected_content)


def cmd_cd(env: TestEnvironment, command: Command):
    expect_args(command, 1)
    env.change_directory(command.args[0])


def cmd_wait(env: TestEnvironment, command: Command):
    expect_args(command, 1)
    env.wait_background(command.args[0])


def cmd_exists(env: TestEnvironment, command: Command):
    expect_min_args(command, 1)

    paths = command.args
    check_readonly = paths[0] == "-readonly"
    if check_readonly:
        paths = paths[1:]
        if not paths:
            raise CommandError("exists", "Expected file argument after -readonly")

    for path in paths:
        if not env.file_exists(path):
            raise CommandError("exists", f"File '{path}' does not exist")
        if check_readonly and not env.is_readonly(path):
            raise CommandError("exists", f"File '{path}' is not read-only")


def cmd_mkdir(env: TestEnvironment, command: Command):
    expect_min_args(command, 1)
    env.create_directories(command.args)


def cmd_cp(env: TestEnvironment, command: Command):
    expect_min_args(command, 2)
    env.copy_files(command.args[:-1], command.args[-1])


def cmd_rm(env: TestEnvironment, command: Command):
    expect_min_args(command, 1)
    env.remove_files(command.args)


def cmd_mv(env: TestEnvironment, command: Command):
    expect_args(command, 2)
    env.move_file(command.args[0], command.args[1])


def cmd_env(env: TestEnvironment, command: Command):
    if not command.args:
        for key, value in sorted(env.env_vars.items()):
            print(f"{key}={value}")
        return

    for arg in command.args:
        key, sep, value = arg.partition("=")
        if not sep:
            raise CommandError("env", f"Invalid env format: {arg}")
        env.set_env_var(key, value)


def cmd_stdin(env: TestEnvironment, command: Command):
    expect_args(command, 1)
    env.set_stdin_from_file(command.args[0])


def cmd_skip(env: TestEnvironment, command: Command):
    env.should_skip = True
    if command.args:
        raise SkipError(" ".join(command.args))
    raise SkipError()


def cmd_stop(env: TestEnvironment, command: Command):
    env.should_stop = True
    logger.debug("stop: %s", " ".join(command.args) or "Test stopped early")


def cmd_kill(env: TestEnvironment, command: Command):
    args = command.args
    if len(args) == 2 and args[0].startswith("-"):
        env.kill_background(args[1], args[0])
    elif len(args) == 1:
        env.kill_background(args[0])
    else:
        raise CommandError("kill", "Expected 1 or 2 arguments")


def cmd_chmod(env: TestEnvironment, command: Command):
    expect_args(command, 2)
    env.change_permissions(command.args[0], command.args[1])


def cmd_symlink(env: TestEnvironment, command: Command):
    if len(command.args) != 2:
        raise CommandError("symlink", "Expected exactly 2 arguments: target link_name")
    env.create_symlink(command.args[0], command.args[1])


def cmd_unquote(env: TestEnvironment, command: Command):
    expect_args(command, 1)
    env.unquote_file(command.args[0])


def cmd_grep(env: TestEnvironment, command: Command):
    expect_min_args(command, 2)
    env.grep_files(command.args[0], command.args[1:])


BUILTIN_COMMANDS: dict[str, BuiltinFn] = {
    "exec": cmd_exec,
    "cmp": cmd_cmp,
    "cmpenv": cmd_cmpenv,
    "stdout": cmd_output,
    "stderr": cmd_output,
    "cd": cmd_cd,
    "wait": cmd_wait,
    "exists": cmd_exists,
    "mkdir": cmd_mkdir,
    "cp": cmd_cp,
    "rm": cmd_rm,
    "mv": cmd_mv,
    "env": cmd_env,
    "stdin": cmd_stdin,
    "skip": cmd_skip,
    "stop": cmd_stop,
    "kill": cmd_kill,
    "chmod": cmd_chmod,
    "symlink": cmd_symlink,
    "unquote": cmd_unquote,
    "grep": cmd_grep,
}
