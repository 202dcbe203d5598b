"""Condition tags gating command lines.

A tag is looked up in the condition table first, so a registered value always
wins over the dynamic ``env:NAME`` / ``exec:PROGRAM`` probes. Dynamic tags are
evaluated at the point of use and never cached.
"""

import functools
import logging
import os
import socket
import sys
from typing import Mapping, Optional

import pexpect

from .errors import UnknownConditionError

logger = logging.getLogger(__name__)

# Public resolvers reachable on port 53 from most CI networks
NETWORK_PROBE_ADDRESSES = [("1.1.1.1", 53), ("8.8.8.8", 53)]
NETWORK_PROBE_TIMEOUT = 0.5


def env_is_set(name: str) -> bool:
    return name in os.environ


def program_exists(program: str) -> bool:
    """Check whether ``program`` resolves on the search path."""
    return pexpect.which(program) is not None


@functools.lru_cache(maxsize=None)
def network_available() -> bool:
    """Probe outbound connectivity once per process."""
    for address in NETWORK_PROBE_ADDRESSES:
        try:
            with socket.create_connection(address, timeout=NETWORK_PROBE_TIMEOUT):
                return True
        except OSError:
            continue
    return False


class Probes:
    """Host probes backing the dynamic ``env:`` and ``exec:`` tags."""

    def env_is_set(self, name: str) -> bool:
        return env_is_set(name)

    def program_exists(self, program: str) -> bool:
        return program_exists(program)


def default_conditions(probe_network: bool = True) -> dict[str, bool]:
    """Platform and build-mode tags every run starts with."""
    is_windows = os.name == "nt"
    is_mac = sys.platform == "darwin"
    conditions = {
        "unix": os.name == "posix",
        "windows": is_windows,
        "linux": sys.platform.startswith("linux"),
        "darwin": is_mac,
        "macos": is_mac,
        "mac": is_mac,
        "debug": __debug__,
        "release": not __debug__,
    }
    if probe_network:
        conditions["net"] = network_available()
    return conditions


def _lookup(tag: str, table: Mapping[str, bool], probes: Probes) -> Optional[bool]:
    if tag in table:
        return table[tag]
    if tag.startswith("env:"):
        return probes.env_is_set(tag[len("env:") :])
    if tag.startswith("exec:"):
        return probes.program_exists(tag[len("exec:") :])
    return None


def resolve_condition(
    tag: str, table: Mapping[str, bool], probes: Optional[Probes] = None
) -> bool:
    """Evaluate a condition tag, honoring a single leading ``!``.

    Raises UnknownConditionError when the tag is neither registered nor a
    dynamic ``env:``/``exec:`` tag. ``!!tag`` is not double negation: the
    remainder ``!tag`` is looked up literally.
    """
    probes = probes or Probes()

    value = _lookup(tag, table, probes)
    if value is None and tag.startswith("!"):
        base = tag[1:]
        base_value = _lookup(base, table, probes)
        if base_value is None:
            raise UnknownConditionError(base)
        value = not base_value
    if value is None:
        raise UnknownConditionError(tag)

    logger.debug("condition [%s] -> %s", tag, value)
    return value
