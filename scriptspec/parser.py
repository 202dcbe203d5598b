"""Parser for txtar-style test scripts.

A script is a prologue of command lines followed by embedded files::

    # comments and blank lines are ignored
    [unix] exec cat hello.txt
    stdout 'hello world'
    ! exists missing.txt

    -- hello.txt --
    hello world

Command lines may start with a ``[condition]`` tag and/or a ``!`` negation
marker and may end with ``&`` to run in the background.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from .errors import ParseError

QUOTES = ('"', "'")

ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "\\": "\\",
    '"': '"',
    "'": "'",
}


@dataclass(frozen=True)
class TxtarFile:
    name: str
    contents: bytes


@dataclass(frozen=True)
class Command:
    name: str
    args: list[str] = field(default_factory=list)
    line_num: int = 0
    condition: Optional[str] = None
    background: bool = False
    negated: bool = False

    def to_str(self) -> str:
        """Reconstruct the command line so that tokenizing it yields the same command."""
        parts = []
        if self.condition is not None:
            parts.append(f"[{self.condition}]")
        if self.negated:
            parts.append("!")
        parts.append(quote_token(self.name, leading=self.condition is None and not self.negated))
        parts.extend(quote_token(arg) for arg in self.args)
        if self.background:
            parts.append("&")
        return " ".join(parts)


@dataclass(frozen=True)
class Script:
    commands: list[Command] = field(default_factory=list)
    files: list[TxtarFile] = field(default_factory=list)

    def to_text(self) -> str:
        """Serialize back to the archive format."""
        out = [command.to_str() + "\n" for command in self.commands]
        for file in self.files:
            out.append(f"-- {file.name} --\n")
            if file.contents:
                out.append(file.contents.decode("utf-8", "surrogateescape") + "\n")
        return "".join(out)


def quote_token(token: str, leading: bool = False) -> str:
    """Quote a token for the command grammar, leaving simple words bare."""
    needs_quotes = (
        not token
        or any(c.isspace() or c in QUOTES or c == "\\" for c in token)
        or token in ("!", "&")
        or (leading and token.startswith(("#", "[", "--")))
    )
    if not needs_quotes:
        return token

    escaped = (
        token.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


def encode_text(text: str) -> bytes:
    try:
        return text.encode("utf-8", "surrogateescape")
    except UnicodeEncodeError:
        # Lone surrogates that did not come from undecodable input bytes
        return text.encode("utf-8", "surrogatepass")


def split_lines(text: str) -> list[str]:
    """Split on ``\\n`` only, dropping a trailing ``\\r`` from each line.

    ``str.splitlines`` also breaks on form feeds and Unicode separators, which
    would shift line numbers away from what an editor shows.
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


class Tokenizer:
    """Quote- and escape-aware tokenizer for a single command line."""

    def __init__(self, line: str):
        self.line = line
        self.pos = 0

    def eof(self) -> bool:
        """Check if we've reached the end of the line."""
        return self.pos >= len(self.line)

    def peek(self) -> Optional[str]:
        """Peek at the current character without consuming it."""
        if self.eof():
            return None
        return self.line[self.pos]

    def at_space(self) -> bool:
        return not self.eof() and self.line[self.pos] in " \t"

    def skip_whitespace(self):
        """Skip whitespace characters."""
        while self.at_space():
            self.pos += 1

    def consume_escape(self) -> str:
        """Consume a backslash sequence, returning its replacement text."""
        self.pos += 1  # Skip backslash
        if self.eof():
            # Dangling backslash
            return "\\"

        next_char = self.line[self.pos]
        self.pos += 1
        if next_char in ESCAPES:
            return ESCAPES[next_char]
        # Any other escaped char is kept literally
        return "\\" + next_char

    def consume_quoted(self, quote_char: str) -> str:
        """Consume a quoted region; an unterminated quote runs to end of line."""
        self.pos += 1  # Skip opening quote
        content = ""

        while not self.eof():
            char = self.line[self.pos]
            if char == "\\":
                content += self.consume_escape()
            elif char == quote_char:
                self.pos += 1  # Skip closing quote
                break
            else:
                content += char
                self.pos += 1
        return content

    def consume_token(self) -> str:
        """Consume one token; quoted regions may be glued to bare characters."""
        content = ""
        while not self.eof() and not self.at_space():
            char = self.line[self.pos]
            if char in QUOTES:
                content += self.consume_quoted(char)
            elif char == "\\":
                content += self.consume_escape()
            else:
                content += char
                self.pos += 1
        return content

    def tokenize(self) -> list[str]:
        """
        Tokenize the entire line into a list of strings.
        An empty quoted string (``""`` or ``''``) yields an empty token.
        """
        tokens: list[str] = []

        while not self.eof():
            self.skip_whitespace()
            if self.eof():
                break
            tokens.append(self.consume_token())

        return tokens


def tokenize(line: str) -> list[str]:
    return Tokenizer(line).tokenize()


class Reader:
    def __init__(self, content: str):
        self.lines = split_lines(content)
        self.position = 0

    def consume(self) -> str:
        """Consume and return the next line, raises EOFError if at EOF"""
        if self.position >= len(self.lines):
            raise EOFError("Attempted to consume line at EOF")
        line = self.lines[self.position]
        self.position += 1
        return line

    def is_eof(self) -> bool:
        return self.position >= len(self.lines)

    def line_number(self) -> int:
        return self.position + 1


def parse_file_header(line: str) -> Optional[str]:
    """Return the file name of a ``-- name --`` header line, else None."""
    trimmed = line.strip()
    if trimmed.startswith("-- ") and trimmed.endswith(" --") and len(trimmed) > 6:
        return trimmed[3:-3]
    return None


def parse_command_line(line: str, line_num: int) -> Optional[Command]:
    """Parse a single command line; returns None when it holds no command."""
    trimmed = line.strip()
    if not trimmed or trimmed.startswith("#"):
        return None

    condition = None
    if trimmed.startswith("["):
        end = trimmed.find("]")
        if end < 0:
            raise ParseError(line_num, "Unclosed condition bracket")
        condition = trimmed[1:end]
        trimmed = trimmed[end + 1 :].strip()

    tokens = tokenize(trimmed)
    if not tokens:
        return None

    negated = tokens[0] == "!"
    if negated:
        if len(tokens) < 2:
            raise ParseError(line_num, "! requires a command")
        tokens = tokens[1:]

    name, args = tokens[0], tokens[1:]

    background = bool(args) and args[-1] == "&"
    if background:
        args = args[:-1]

    return Command(
        name=name,
        args=args,
        line_num=line_num,
        condition=condition,
        background=background,
        negated=negated,
    )


class Parser:
    def __init__(self, content: Union[str, bytes]):
        if isinstance(content, bytes):
            # Undecodable bytes survive as surrogates and are restored on encode
            content = content.decode("utf-8", "surrogateescape")
        self.reader = Reader(content)
        self.commands: list[Command] = []
        self.files: list[TxtarFile] = []
        self.current_name: Optional[str] = None
        self.current_lines: list[str] = []

    def parse(self) -> Script:
        """Parse the whole script text"""
        while not self.reader.is_eof():
            line_num = self.reader.line_number()
            line = self.reader.consume()

            if not line.strip():
                continue

            name = parse_file_header(line)
            if name is not None:
                self.flush_file()
                self.current_name = name
                continue

            if self.current_name is not None:
                self.current_lines.append(line)
                continue

            command = parse_command_line(line, line_num)
            if command is not None:
                self.commands.append(command)

        self.flush_file()
        return Script(commands=self.commands, files=self.files)

    def flush_file(self):
        if self.current_name is None:
            return
        # The archive stores contents without a final separator
        contents = "\n".join(self.current_lines)
        self.files.append(TxtarFile(self.current_name, encode_text(contents)))
        self.current_name = None
        self.current_lines = []


def parse(content: Union[str, bytes]) -> Script:
    """Parse script text (or raw bytes) into a ``Script``."""
    return Parser(content).parse()
