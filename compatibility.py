#!/usr/bin/env python3
"""
Provider version compatibility

Compares the providers exposed by the management plane (exact versions)
with the providers a template requires (versions or constraints).
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

import nodesemver

logger = logging.getLogger(__name__)

ProviderTuple = Tuple[str, str]


@dataclass
class CompatibilityResult:
    missing: List[str] = field(default_factory=list)
    non_satisfying: List[str] = field(default_factory=list)
    parsing: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.non_satisfying or self.parsing)

    @property
    def missing_message(self) -> str:
        if not self.missing:
            return ""
        return f"one or more required providers are not deployed yet: {', '.join(self.missing)}"

    @property
    def non_satisfying_message(self) -> str:
        if not self.non_satisfying:
            return ""
        return f"one or more required providers do not satisfy constraints: {', '.join(self.non_satisfying)}"

    @property
    def parsing_message(self) -> str:
        if not self.parsing:
            return ""
        return f"failed to parse provider versions: {'; '.join(self.parsing)}"

    @property
    def message(self) -> str:
        parts = [self.missing_message, self.non_satisfying_message, self.parsing_message]
        return "; ".join(p for p in parts if p)


# Partial versions are padded, so "v2.6" reads as 2.6.0
_PARTIAL_VERSION = re.compile(r"^[vV]?(\d+)(?:\.(\d+))?(?:\.(\d+))?([-+].*)?$")


def coerce_version(version: str) -> str:
    match = _PARTIAL_VERSION.match(version.strip())
    if match is None:
        return version.strip()
    major, minor, patch, rest = match.groups()
    return f"{major}.{minor or 0}.{patch or 0}{rest or ''}"


def parse_version(version: str):
    """Parse a semantic version; a leading "v" and missing minor or patch parts are accepted"""
    return nodesemver.make_semver(coerce_version(version), loose=False)


def parse_constraint(constraint: str):
    """
    Parse a version constraint

    Commas are accepted as AND separators in addition to whitespace, so
    ">= 1.2, < 2.0" and ">=1.2.0 <2.0.0" mean the same thing.
    """
    normalized = " ".join(constraint.replace(",", " ").split())
    return nodesemver.make_range(normalized, loose=False)


def satisfies(version: str, constraint: str) -> bool:
    return parse_constraint(constraint).test(parse_version(version))


def check_compatibility(
    exposed: Iterable[ProviderTuple], required: Iterable[ProviderTuple]
) -> CompatibilityResult:
    """
    Report every required provider that is missing, unsatisfied or unparsable

    All problems are collected in one pass; each category is sorted so the
    rendering does not depend on input order.
    """
    exposed_by_name = {name: version for name, version in exposed}
    result = CompatibilityResult()

    for name, constraint in required:
        if name not in exposed_by_name:
            result.missing.append(name)
            continue

        version = exposed_by_name[name]
        if not version or not constraint:
            continue

        try:
            exact = parse_version(version)
        except ValueError as e:
            result.parsing.append(f"failed to parse version {version} of the provider {name}: {e}")
            continue

        try:
            expected = parse_constraint(constraint)
        except ValueError as e:
            result.parsing.append(f"failed to parse constraint {constraint} of the provider {name}: {e}")
            continue

        if not expected.test(exact):
            result.non_satisfying.append(f"{name} {version} !~ {constraint}")

    result.missing = sorted(set(result.missing))
    result.non_satisfying.sort()
    result.parsing.sort()

    if not result.ok:
        logger.debug(f"Provider compatibility check failed: {result.message}")
    return result
