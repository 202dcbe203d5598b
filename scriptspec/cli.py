"""Command-line runner: ``scriptspec [--verbose] [--update] PATH...``"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from .errors import GenericError, ScriptError, ScriptSpecError
from .runner import RunParams, discover_scripts, env_flag, run_script


class T:
    """Terminal color helper with ANSI escape sequences."""

    red, green, blue, yellow, grey, bold, clear = (
        "\033[31m",
        "\033[32m",
        "\033[34m",
        "\033[33m",
        "\033[90m",
        "\033[1m",
        "\033[0m",
    )


def get_terminal_width():
    """Get the terminal width, with fallback."""
    try:
        return os.get_terminal_size().columns
    except OSError:
        return 80  # fallback width if terminal size can't be determined


def print_horizontal_rule():
    """Print a horizontal rule spanning the terminal width."""
    width = get_terminal_width()
    print(f"{T.grey}{'─' * width}{T.clear}")


def print_with_left_border(text, border_char="│", border_color=None, text_color=None):
    """Print text with a left border, wrapping lines to terminal width."""
    width = get_terminal_width()
    border_prefix = f"{border_color or ''}{border_char}{T.clear} {text_color or ''}"
    content_width = width - len(border_char) - 1  # Account for border and space

    lines = text.split("\n")
    for line in lines:
        if not line.strip():  # Handle empty lines
            print(f"{border_prefix}{T.clear}")
        elif len(line) <= content_width:
            print(f"{border_prefix}{line}{T.clear}")
        else:
            # Wrap long lines
            while line:
                chunk = line[:content_width]
                line = line[content_width:]
                print(f"{border_prefix}{chunk}{T.clear}")


def parse_condition(value: str) -> tuple[str, bool]:
    """argparse type for ``--condition NAME=BOOL``."""
    name, sep, flag = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=BOOL, got '{value}'")
    flag = flag.lower()
    if flag in ("1", "true", "yes", "on"):
        return name, True
    if flag in ("0", "false", "no", "off"):
        return name, False
    raise argparse.ArgumentTypeError(f"not a boolean: '{flag}'")


def collect_scripts(paths: list[str]) -> list[Path]:
    """Expand directories into their scripts; files are taken as given."""
    scripts: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            scripts.extend(discover_scripts(path))
        elif path.is_file():
            scripts.append(path)
        else:
            raise GenericError(f"Test file not found: {raw}")
    return scripts


class ScriptRunner:
    def __init__(self, params: RunParams):
        self.params = params

    def run_all(self, scripts: list[Path], test_filter: Optional[str] = None) -> bool:
        """Run all selected scripts, return True if all passed"""
        passed = 0
        skipped = []
        failed = []
        total = len(scripts)

        print(f"{T.bold}{T.blue}ScriptSpec Test Runner{T.clear}")
        print(f"Found {total} test scripts")
        print()

        def should_run_test(test_num: int, script: Path) -> bool:
            """Check if test should be run based on filter"""
            if not test_filter:
                return True
            # Check if filter is a number
            if test_filter.isdigit():
                return test_num == int(test_filter)
            # Check substring match
            return test_filter.lower() in script.name.lower()

        tests_run = 0
        for i, script in enumerate(scripts):
            test_num = i + 1
            if not should_run_test(test_num, script):
                continue

            if tests_run > 0:  # Add horizontal line before each test except the first
                print()
                print_horizontal_rule()
            print(f"{T.bold}{T.yellow}[{test_num}/{total}] {script}{T.clear}")

            status = self.run_one(script)
            if status == "pass":
                print(f"\n{T.bold}{T.green}PASS{T.clear}")
                passed += 1
            elif status == "skip":
                print(f"\n{T.bold}{T.yellow}SKIP{T.clear}")
                skipped.append((test_num, script))
            else:
                print(f"\n{T.bold}{T.red}FAIL{T.clear}")
                failed.append((test_num, script))
            tests_run += 1

        print()
        print_horizontal_rule()
        print(f"{T.bold}Test Results{T.clear}")
        print(
            f"  {T.green}{passed} passed{T.clear}, {T.red}{len(failed)} failed{T.clear}, "
            f"{T.yellow}{len(skipped)} skipped{T.clear} out of {tests_run} tests"
        )

        if failed:
            print(f"\n{T.bold}Failed tests:{T.clear}")
            for test_num, script in failed:
                print(f"  {T.red}• [{test_num}] {script}{T.clear}")

        print()
        if not failed and not skipped:
            print(f"{T.bold}{T.green}All tests passed! ✅{T.clear}")
            return True
        print(f"{T.bold}{T.red}Some tests did not pass ❌{T.clear}")
        return False

    def run_one(self, script: Path) -> str:
        try:
            outcome = run_script(script, self.params)
        except ScriptError as e:
            border = T.yellow if e.skipped else T.red
            print_with_left_border(str(e), border_color=border, text_color=T.grey)
            return "skip" if e.skipped else "fail"
        except ScriptSpecError as e:
            print_with_left_border(str(e), border_color=T.red, text_color=T.grey)
            return "fail"

        if outcome.updates:
            print(f"{T.blue}▸ updated {len(outcome.updates)} expectation(s) ✓{T.clear}")
        return "pass"


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ScriptSpec Test Runner")
    parser.add_argument(
        "paths",
        nargs="+",
        help="Script files or directories of *.txt scripts",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log each command as it runs",
    )
    parser.add_argument(
        "--test",
        help="Run only tests matching this number or substring of the script name",
    )
    parser.add_argument(
        "--update",
        action="store_true",
        default=None,
        help="Rewrite mismatched stdout/stderr expectations (default: $UPDATE_SCRIPTS)",
    )
    parser.add_argument(
        "--preserve-work",
        action="store_true",
        default=env_flag("SCRIPTSPEC_PRESERVE_WORK"),
        help="Keep the work directory of failing scripts",
    )
    parser.add_argument(
        "--workdir-root",
        help="Create work directories inside this directory",
    )
    parser.add_argument(
        "--condition",
        action="append",
        type=parse_condition,
        default=[],
        metavar="NAME=BOOL",
        help="Set a condition value (repeatable)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    params = RunParams()
    if args.update is not None:
        params.with_update_scripts(args.update)
    params.with_preserve_work_on_failure(args.preserve_work)
    if args.workdir_root:
        params.with_workdir_root(args.workdir_root)
    for name, value in args.condition:
        params.condition(name, value)

    try:
        scripts = collect_scripts(args.paths)
    except ScriptSpecError as e:
        print(f"{T.red}{e}{T.clear}", file=sys.stderr)
        return 1

    runner = ScriptRunner(params)
    return 0 if runner.run_all(scripts, test_filter=args.test) else 1


if __name__ == "__main__":
    sys.exit(main())
