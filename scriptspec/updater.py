"""Rewrite stdout/stderr expectations in a script from actual output.

Updates are keyed by 1-based line number and applied to the original text
line by line, so comments, blank lines and file sections are left exactly as
they were.
"""

import logging
from pathlib import Path
from typing import Mapping, Optional, Union

from .conditions import Probes
from .environment import TestEnvironment
from .errors import ParseError, ScriptError
from .interpreter import CommandFn, Interpreter, RunOutcome, ScriptUpdate
from .parser import parse, tokenize

logger = logging.getLogger(__name__)

__all__ = ["ScriptUpdate", "apply_updates", "format_update_line", "quote_output", "update"]


def quote_output(output: str) -> str:
    """Render an output value as a single command argument."""
    if not output:
        return '"-"'
    if any(c.isspace() or c in "\"'\\" for c in output):
        escaped = (
            output.replace("\\", "\\\\")
            .replace('"', '\\"')
            .replace("\n", "\\n")
            .replace("\t", "\\t")
            .replace("\r", "\\r")
        )
        return f'"{escaped}"'
    return output


def format_update_line(line: str, update: ScriptUpdate) -> Optional[str]:
    """Return the rewritten line, or None when it is not the expected command."""
    stripped = line.lstrip()
    indent = line[: len(line) - len(stripped)]

    prefix, rest = "", stripped
    if stripped.startswith("["):
        end = stripped.find("]")
        if end < 0:
            return None
        prefix, rest = stripped[: end + 1] + " ", stripped[end + 1 :].lstrip()

    tokens = tokenize(rest)
    if not tokens or tokens[0] != update.command_name:
        return None

    return f"{indent}{prefix}{update.command_name} {quote_output(update.new_output)}"


def apply_updates(text: str, updates: list[ScriptUpdate]) -> str:
    """Apply updates to the lines they target; every other byte is kept."""
    by_line = {update.line_num: update for update in updates}
    lines = text.split("\n")

    for index, line in enumerate(lines):
        update = by_line.get(index + 1)
        if update is None:
            continue

        ending = "\r" if line.endswith("\r") else ""
        new_line = format_update_line(line[: len(line) - len(ending)], update)
        if new_line is None:
            logger.warning(
                "line %d no longer holds a %s command, not updating",
                update.line_num,
                update.command_name,
            )
            continue
        lines[index] = new_line + ending

    return "\n".join(lines)


def write_updates(script_path: Union[str, Path], text: str, updates: list[ScriptUpdate]) -> bool:
    """Write the updated script back; returns True if the file changed."""
    if not updates:
        return False
    updated = apply_updates(text, updates)
    if updated == text:
        return False
    Path(script_path).write_bytes(updated.encode("utf-8"))
    logger.info("updated %d expectation(s) in %s", len(updates), script_path)
    return True


def update(
    script_path: Union[str, Path],
    script_text: str,
    env: TestEnvironment,
    conditions: Mapping[str, bool],
    commands: Optional[Mapping[str, CommandFn]] = None,
    probes: Optional[Probes] = None,
) -> RunOutcome:
    """Run a script in update mode and write corrected expectations back.

    Updates are written even when the run halts for an unrelated reason;
    that failure is raised afterwards.
    """
    try:
        script = parse(script_text)
    except ParseError as e:
        raise ScriptError.wrap(str(script_path), e.line, script_text, e) from e

    env.prepare(script.files)
    interpreter = Interpreter(
        env,
        conditions,
        commands,
        update_mode=True,
        probes=probes,
        script_file=str(script_path),
        script_text=script_text,
    )
    outcome = interpreter.execute(script)
    write_updates(script_path, script_text, outcome.updates)
    outcome.raise_for_error()
    return outcome
