"""Cluster version parsing and comparison."""

import re
from typing import NamedTuple

from kraan.controller.exceptions import InvalidVersionError

_VERSION_RE = re.compile(r"^v?(\d+)(?:\.(\d+)\+?)?(?:\.(\d+))?(?:[-+].*)?$")


class KubeVersion(NamedTuple):
    major: int
    minor: int = 0
    patch: int = 0

    def __str__(self) -> str:
        return f"v{self.major}.{self.minor}.{self.patch}"


def parse_version(value: str) -> KubeVersion:
    """Parse a version such as ``v1.19.3``, ``1.20.0-gke.100`` or ``1.18+``.

    Build and vendor suffixes are ignored; missing parts default to zero.
    """
    match = _VERSION_RE.match(value.strip())
    if not match:
        raise InvalidVersionError(f"invalid version: {value!r}")
    major, minor, patch = match.groups()
    return KubeVersion(int(major), int(minor or 0), int(patch or 0))


def version_satisfies(current: str, required: str) -> bool:
    """Return True if ``current`` is equal to or above ``required``.

    An empty requirement is always satisfied.
    """
    if not required or not required.strip():
        return True
    return parse_version(current) >= parse_version(required)
