# Test configuration for pytest
#
# Note: Tests require the package to be installed.
# Run `pip install -e .[test]` from the project root before running tests.

import sys
from pathlib import Path

import pytest

from scriptspec.conditions import default_conditions
from scriptspec.environment import TestEnvironment
from scriptspec.parser import quote_token
from scriptspec.runner import RunParams

SCRIPTS_DIR = Path(__file__).resolve().parent / "scripts"


def pytest_configure(config):
    """Register custom markers for platform-specific tests."""
    config.addinivalue_line("markers", "unix: mark test to run only on Unix")
    config.addinivalue_line("markers", "windows: mark test to run only on Windows")


def pytest_collection_modifyitems(config, items):
    """Skip platform-specific tests on incompatible platforms."""
    is_windows = sys.platform.startswith("win")
    skip_unix = pytest.mark.skip(reason="Unix-only test")
    skip_windows = pytest.mark.skip(reason="Windows-only test")

    for item in items:
        if "unix" in item.keywords and is_windows:
            item.add_marker(skip_unix)
        if "windows" in item.keywords and not is_windows:
            item.add_marker(skip_windows)


def python_line(code: str, *args: str, background: bool = False) -> str:
    """Script line running ``code`` with the interpreter running the tests."""
    parts = ["exec", quote_token(sys.executable), "-c", quote_token(code)]
    parts.extend(quote_token(arg) for arg in args)
    if background:
        parts.append("&")
    return " ".join(parts)


@pytest.fixture
def py():
    return python_line


@pytest.fixture
def python_name():
    """Name a background python process is registered under, quoted for scripts."""
    return quote_token(sys.executable)


@pytest.fixture
def env(tmp_path):
    with TestEnvironment(tmp_path, name="unit") as environment:
        yield environment


@pytest.fixture
def conditions():
    return default_conditions(probe_network=False)


@pytest.fixture
def params():
    return RunParams(probe_network=False)


@pytest.fixture
def testdata(tmp_path):
    """Directory of scripts plus a helper writing one script into it."""
    directory = tmp_path / "testdata"
    directory.mkdir()

    def write(name: str, text: str) -> Path:
        path = directory / name
        path.write_bytes(text.encode("utf-8"))
        return path

    write.directory = directory
    return write
