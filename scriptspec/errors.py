"""Exception hierarchy and failure rendering.

Every failure the harness can report is a ``ScriptSpecError``. Command-level
failures are promoted into ``ScriptError`` before they reach the caller so the
message always carries the script file, the 1-based line and a few lines of
surrounding source with the failing line marked.
"""


class ScriptSpecError(Exception):
    """Base class for all harness errors."""


class ParseError(ScriptSpecError):
    """Malformed script text (unclosed condition bracket, bare ``!``)."""

    def __init__(self, line: int, message: str):
        self.line = line
        self.message = message
        super().__init__(f"Parse error at line {line}: {message}")


class CommandError(ScriptSpecError):
    """A built-in precondition was violated (arity, missing file, ...)."""

    def __init__(self, command: str, message: str):
        self.command = command
        self.message = message
        super().__init__(f"Command '{command}' failed: {message}")


class OutputCompareError(ScriptSpecError):
    """stdout/stderr assertion mismatch; keeps both values for diff display."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(format_output_comparison(expected, actual))


class FileCompareError(ScriptSpecError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"File comparison failed: {message}")


class UnknownCommandError(ScriptSpecError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown command: {name}")


class UnknownConditionError(ScriptSpecError):
    def __init__(self, tag: str):
        self.tag = tag
        super().__init__(f"Unknown condition: {tag}")


class GenericError(ScriptSpecError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SkipError(GenericError):
    """Raised by ``skip``; the run fails but is reported as skipped."""

    def __init__(self, reason: str = "Test skipped"):
        self.reason = reason
        super().__init__(f"SKIP: {reason}")


class ScriptError(ScriptSpecError):
    """A failure annotated with its position in the originating script."""

    def __init__(
        self,
        script_file: str,
        line_num: int,
        context: str,
        source: ScriptSpecError,
    ):
        self.script_file = script_file
        self.line_num = line_num
        self.context = context
        self.source = source
        super().__init__(
            f"Error in {script_file} at line {line_num}:\n{context}\n\n{source}"
        )
        self.__cause__ = source

    @classmethod
    def wrap(
        cls, script_file: str, line_num: int, script_text: str, source: ScriptSpecError
    ) -> "ScriptError":
        return cls(script_file, line_num, error_context(script_text, line_num), source)

    @property
    def skipped(self) -> bool:
        return isinstance(self.source, SkipError)


def error_context(script_text: str, error_line: int, radius: int = 2) -> str:
    """Render the lines around ``error_line``, marking it with ``>``."""
    lines = script_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    if not lines or error_line < 1:
        return ""

    start = max(error_line - radius, 1)
    end = min(error_line + radius, len(lines))
    rendered = []
    for line_num in range(start, end + 1):
        text = lines[line_num - 1].rstrip("\r")
        marker = ">" if line_num == error_line else " "
        rendered.append(f"{marker} {line_num} | {text}")
    return "\n".join(rendered).rstrip()


def format_output_value(value: str) -> str:
    if not value:
        return "<empty>"

    lines = value.splitlines()
    if "\n" in value and len(lines) > 1:
        return "\n".join(f"  {i} | {line}" for i, line in enumerate(lines, 1))

    # Single line: quote it if whitespace or control characters would be invisible
    if any(c.isspace() or not c.isprintable() for c in value):
        return f"'{value}'"
    return value


def format_output_comparison(expected: str, actual: str) -> str:
    if not expected and not actual:
        return "Both expected and actual output are empty"
    if not expected:
        return f"Expected empty output, but got:\n{format_output_value(actual)}"
    if not actual:
        return f"Expected output:\n{format_output_value(expected)}\nBut got empty output"

    if (
        len(expected) <= 50
        and len(actual) <= 50
        and "\n" not in expected
        and "\n" not in actual
    ):
        return f"Expected: '{expected}'\n  Actual: '{actual}'"

    return (
        "Output mismatch:\n\n"
        f"Expected:\n{format_output_value(expected)}\n\n"
        f"Actual:\n{format_output_value(actual)}"
    )

