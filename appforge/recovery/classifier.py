"""Build-log classification.

Maps opaque build-toolchain output to a typed, severity-ranked verdict.
Categories are evaluated as an ordered priority list: the first category
with a matching trigger wins, even if later categories would also match.
Triggers are case-insensitive substrings; each category then runs its own
extraction pattern over the raw log text to produce a focused message.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from appforge.core.models import BuildError, BuildErrorType, Severity

logger = logging.getLogger("appforge.recovery.classifier")

EXCERPT_CHARS = 200
EMPTY_OUTPUT_MESSAGE = "Build output is empty"

_FLAGS = re.IGNORECASE | re.DOTALL

_SYMBOL_RE = re.compile(r"cannot find symbol.*?symbol\s*:\s*(?:\w+[ \t]+)?([\w$]+)", _FLAGS)
_SYMBOL_NOT_FOUND_RE = re.compile(r"['\"]?([\w.$]+)['\"]?\s+not found", re.IGNORECASE)
_UNRESOLVED_RE = re.compile(
    r"(?:unresolved reference|cannot resolve(?: symbol)?)\s*:?\s*['\"]?([\w.$]+)", re.IGNORECASE,
)
_DUPLICATE_RE = re.compile(
    r"duplicate.*?(?:entry|class|resource)\s*:?\s*['\"]?([\w.$/]+)", re.IGNORECASE,
)
_ALREADY_DEFINED_RE = re.compile(r"([\w.$]+)\s+is already defined", re.IGNORECASE)
_SYNTAX_LINE_RE = re.compile(r":(\d+):\s*error:\s*(.+)")
_RESOURCE_RE = re.compile(r"resource\s+['\"]?([\w/.:@]+)['\"]?.*?not", re.IGNORECASE)


@dataclass(frozen=True)
class _Category:
    type: BuildErrorType
    triggers: tuple[str, ...]
    severity: Severity
    recoverable: bool
    extract: Callable[[str], tuple[str, str]]


def _extract_symbol(output: str) -> tuple[str, str]:
    match = _SYMBOL_RE.search(output) or _SYMBOL_NOT_FOUND_RE.search(output)
    if match:
        symbol = match.group(1)
        return f"Symbol '{symbol}' not found", f"Missing import or undefined symbol: {symbol}"
    return "Symbol not found", "Missing import or undefined symbol"


def _extract_unresolved(output: str) -> tuple[str, str]:
    match = _UNRESOLVED_RE.search(output)
    if match:
        return f"Unresolved reference: {match.group(1)}", "Likely missing dependency or import"
    return "Unresolved reference", "Likely missing dependency or import"


def _extract_duplicate(output: str) -> tuple[str, str]:
    match = _DUPLICATE_RE.search(output) or _ALREADY_DEFINED_RE.search(output)
    if match:
        return f"Duplicate definition: {match.group(1)}", "Class or resource already defined elsewhere"
    return "Duplicate definition", "Class or resource already defined elsewhere"


def _extract_syntax(output: str) -> tuple[str, str]:
    match = _SYNTAX_LINE_RE.search(output)
    if match:
        return f"Syntax error at line {match.group(1)}", match.group(2).strip()
    return "Syntax error", "Check for missing braces, semicolons, or invalid syntax"


def _extract_manifest(output: str) -> tuple[str, str]:
    if "permission" in output.lower():
        return "Manifest permission error", "Missing permission declaration in the app manifest"
    return "Manifest error", "Invalid manifest configuration"


def _extract_resource(output: str) -> tuple[str, str]:
    match = _RESOURCE_RE.search(output)
    if match:
        return f"Resource not found: {match.group(1)}", "Missing layout, drawable, or resource file"
    return "Resource error", "Missing layout, drawable, or resource file"


def _extract_dependency(output: str) -> tuple[str, str]:
    return "Dependency resolution error", "Version conflict or missing dependency in the build script"


# Priority order matters: first match wins.
CATEGORIES: tuple[_Category, ...] = (
    _Category(
        BuildErrorType.SYMBOL_NOT_FOUND, ("not found", "cannot find symbol"),
        Severity.HIGH, True, _extract_symbol,
    ),
    _Category(
        BuildErrorType.UNRESOLVED_REFERENCE, ("cannot resolve", "unresolved reference"),
        Severity.HIGH, True, _extract_unresolved,
    ),
    _Category(
        BuildErrorType.DUPLICATE_DEFINITION, ("duplicate", "already defined"),
        Severity.CRITICAL, True, _extract_duplicate,
    ),
    _Category(
        BuildErrorType.SYNTAX_ERROR, ("syntax error", "unexpected token"),
        Severity.CRITICAL, True, _extract_syntax,
    ),
    _Category(
        BuildErrorType.MANIFEST_ERROR, ("permission", "manifest"),
        Severity.MEDIUM, True, _extract_manifest,
    ),
    # "@" matches far more than resource references (emails, annotations,
    # decorators, npm scopes). Kept as-is; expect false resource-error verdicts.
    _Category(
        BuildErrorType.RESOURCE_ERROR, ("resource", "@"),
        Severity.MEDIUM, True, _extract_resource,
    ),
    _Category(
        BuildErrorType.DEPENDENCY_ERROR, ("dependency", "version conflict"),
        Severity.HIGH, True, _extract_dependency,
    ),
)


class ErrorClassifier:
    """Pure classifier: identical input always yields an identical verdict."""

    def classify(self, log_text: Optional[str]) -> BuildError:
        """Classify raw build output.

        Args:
            log_text: Build toolchain output; None and "" are both "empty".

        Returns:
            BuildError for the first matching category, or an unrecoverable
            UNKNOWN verdict whose message is the first 200 characters.
        """
        if not log_text:
            return BuildError(
                type=BuildErrorType.UNKNOWN,
                message=EMPTY_OUTPUT_MESSAGE,
                severity=Severity.MEDIUM,
                recoverable=False,
            )

        lowered = log_text.lower()
        excerpt = log_text[:EXCERPT_CHARS]

        for category in CATEGORIES:
            matched = [t for t in category.triggers if t in lowered]
            if not matched:
                continue
            if category.type == BuildErrorType.RESOURCE_ERROR and matched == ["@"]:
                logger.debug("resource-error matched on '@' alone; verdict may be spurious")
            message, details = category.extract(log_text)
            logger.debug("Classified build output as %s: %s", category.type.value, message)
            return BuildError(
                type=category.type,
                message=message,
                details=details,
                severity=category.severity,
                recoverable=category.recoverable,
                excerpt=excerpt,
            )

        return BuildError(
            type=BuildErrorType.UNKNOWN,
            message=excerpt,
            severity=Severity.MEDIUM,
            recoverable=False,
            excerpt=excerpt,
        )
