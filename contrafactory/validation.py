"""Input validation: package names, semantic versions, addresses, chain IDs."""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from typing import Iterable, Optional


class ValidationError(ValueError):
    """Raised when an input value is not acceptable."""


_PACKAGE_NAME_RE = re.compile(r"[a-z][a-z0-9-]{0,62}[a-z0-9]")

_NUM = r"0|[1-9][0-9]*"
_IDENTS = r"[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*"
_SEMVER_RE = re.compile(
    rf"v(?P<major>{_NUM})"
    rf"(?:\.(?P<minor>{_NUM})"
    rf"(?:\.(?P<patch>{_NUM})"
    rf"(?:-(?P<pre>{_IDENTS}))?"
    rf"(?:\+(?P<build>{_IDENTS}))?"
    r")?)?"
)

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


@dataclass(frozen=True)
class _SemVer:
    major: int
    minor: int
    patch: int
    prerelease: str


def _is_numeric(ident: str) -> bool:
    return ident != "" and all("0" <= c <= "9" for c in ident)


def _parse_semver(text: str) -> Optional[_SemVer]:
    match = _SEMVER_RE.fullmatch(text)
    if match is None:
        return None
    prerelease = match.group("pre") or ""
    if prerelease:
        for ident in prerelease.split("."):
            if _is_numeric(ident) and len(ident) > 1 and ident[0] == "0":
                return None
    return _SemVer(
        major=int(match.group("major")),
        minor=int(match.group("minor") or 0),
        patch=int(match.group("patch") or 0),
        prerelease=prerelease,
    )


def _compare_prerelease(x: str, y: str) -> int:
    if x == y:
        return 0
    if not x:
        return 1
    if not y:
        return -1
    xs, ys = x.split("."), y.split(".")
    for a, b in zip(xs, ys):
        if a == b:
            continue
        a_num, b_num = _is_numeric(a), _is_numeric(b)
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num:
            return -1
        if b_num:
            return 1
        return -1 if a < b else 1
    return (len(xs) > len(ys)) - (len(xs) < len(ys))


def validate_package_name(name: str) -> None:
    """Raise ValidationError unless name is a valid package name."""
    if len(name) < 2:
        raise ValidationError("package name too short (min 2 chars)")
    if len(name) > 64:
        raise ValidationError("package name too long (max 64 chars)")
    if not _PACKAGE_NAME_RE.fullmatch(name):
        raise ValidationError(
            "invalid package name: must be lowercase alphanumeric with hyphens, starting with a letter"
        )
    if ".." in name or "--" in name:
        raise ValidationError("invalid characters in package name")


def validate_version(version: str) -> None:
    """Raise ValidationError unless version is a full X.Y.Z semantic version."""
    normalized = normalize_version(version)
    if not normalized:
        raise ValidationError("version cannot be empty")
    if _parse_semver("v" + normalized) is None:
        raise ValidationError(
            "invalid semver version: must be in format X.Y.Z or X.Y.Z-prerelease"
        )
    main_part = normalized.split("-", 1)[0]
    if main_part.count(".") < 2:
        raise ValidationError(
            "invalid semver version: must be in format X.Y.Z (major.minor.patch)"
        )


def normalize_version(version: str) -> str:
    """Strip a single leading 'v' from version."""
    return version[1:] if version.startswith("v") else version


def is_prerelease(version: str) -> bool:
    """Return True if version is a valid semantic version with a prerelease part."""
    parsed = _parse_semver("v" + normalize_version(version))
    return parsed is not None and parsed.prerelease != ""


def compare_versions(v1: str, v2: str) -> int:
    """Return -1, 0 or 1 as v1 is lower, equal or higher than v2.

    Invalid versions sort below valid ones and equal to each other.
    """
    p1 = _parse_semver("v" + normalize_version(v1))
    p2 = _parse_semver("v" + normalize_version(v2))
    if p1 is None and p2 is None:
        return 0
    if p1 is None:
        return -1
    if p2 is None:
        return 1
    core1 = (p1.major, p1.minor, p1.patch)
    core2 = (p2.major, p2.minor, p2.patch)
    if core1 != core2:
        return -1 if core1 < core2 else 1
    return _compare_prerelease(p1.prerelease, p2.prerelease)


def resolve_latest(versions: Iterable[str], include_prerelease: bool) -> str:
    """Return the highest version, preferring stable ones unless asked otherwise.

    Falls back to prereleases when no stable version exists; returns "" for no versions.
    """
    versions = list(versions)
    if not versions:
        return ""
    candidates = [v for v in versions if include_prerelease or not is_prerelease(v)]
    if not candidates:
        candidates = versions
    return max(candidates, key=functools.cmp_to_key(compare_versions))


def validate_address(address: str) -> None:
    """Raise ValidationError unless address is a 0x-prefixed 40-hex-digit address."""
    if len(address.encode("utf-8")) != 42:
        raise ValidationError("invalid address length: must be 42 characters (0x + 40 hex)")
    if not address.startswith("0x"):
        raise ValidationError("invalid address: must start with 0x")
    if not set(address[2:]) <= _HEX_DIGITS:
        raise ValidationError("invalid address: contains non-hex characters")


def validate_chain_id(chain_id: int) -> None:
    """Raise ValidationError unless chain_id is positive."""
    if chain_id <= 0:
        raise ValidationError("chain ID must be positive")