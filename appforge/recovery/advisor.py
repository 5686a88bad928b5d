"""Remediation advice for classified build errors.

Turns a BuildError verdict into a concrete fix suggestion with a fixed
per-category confidence, and decides whether another automated build
attempt is worthwhile given how many have already been made.
"""

from __future__ import annotations

import logging

from appforge.core.models import (
    BuildError,
    BuildErrorType,
    FixAction,
    FixSuggestion,
    RetryRecommendation,
)

logger = logging.getLogger("appforge.recovery.advisor")

MAX_ATTEMPTS_REASON = (
    "Maximum auto-fix attempts reached. Please review the error and provide feedback."
)
NOT_RECOVERABLE_REASON = "Error type is not automatically recoverable."
RETRY_REASON = "Attempting auto-fix..."

# category -> (fix text, action, confidence 0-100)
_REMEDIATIONS: dict[BuildErrorType, tuple[str, FixAction, int]] = {
    BuildErrorType.SYNTAX_ERROR: (
        "Check for missing semicolons, braces, or invalid syntax",
        FixAction.REGENERATE_UNIT,
        60,
    ),
    BuildErrorType.SYMBOL_NOT_FOUND: (
        "Add missing import statement or check symbol name",
        FixAction.ADD_MISSING_REFERENCE,
        70,
    ),
    BuildErrorType.UNRESOLVED_REFERENCE: (
        "Add missing dependency to the build script or import the file",
        FixAction.UPDATE_DEPENDENCIES,
        75,
    ),
    BuildErrorType.DUPLICATE_DEFINITION: (
        "Remove duplicate class or resource definition",
        FixAction.REMOVE_DUPLICATE,
        65,
    ),
    BuildErrorType.MANIFEST_ERROR: (
        "Add missing permissions or fix manifest configuration",
        FixAction.UPDATE_MANIFEST,
        80,
    ),
    BuildErrorType.RESOURCE_ERROR: (
        "Create missing layout, drawable, or resource file",
        FixAction.CREATE_RESOURCE,
        85,
    ),
    BuildErrorType.DEPENDENCY_ERROR: (
        "Resolve version conflict in the build script",
        FixAction.UPDATE_DEPENDENCIES,
        70,
    ),
    BuildErrorType.UNKNOWN: (
        "Unknown error - manual review needed",
        FixAction.MANUAL_REVIEW,
        30,
    ),
}


class FixAdvisor:
    """Maps verdicts to fixes and bounds the number of auto-fix retries."""

    def __init__(self, max_auto_fix_attempts: int = 2):
        self.max_auto_fix_attempts = max_auto_fix_attempts

    def suggest(self, error: BuildError) -> FixSuggestion:
        fix_text, action, confidence = _REMEDIATIONS[error.type]
        return FixSuggestion(error=error, fix_text=fix_text, action=action, confidence=confidence)

    def recommend_retry(self, attempt_count: int, error: BuildError) -> RetryRecommendation:
        """Decide whether to retry after ``attempt_count`` prior auto-fix attempts.

        The attempt ceiling is checked before recoverability, so an
        exhausted budget is reported even for recoverable errors.
        """
        if attempt_count >= self.max_auto_fix_attempts:
            can_retry, reason = False, MAX_ATTEMPTS_REASON
        elif not error.recoverable:
            can_retry, reason = False, NOT_RECOVERABLE_REASON
        else:
            can_retry, reason = True, RETRY_REASON

        logger.info(
            "Retry recommendation for %s after %d attempt(s): %s",
            error.type.value, attempt_count, "retry" if can_retry else "stop",
        )
        return RetryRecommendation(
            can_retry=can_retry,
            reason=reason,
            attempt_number=attempt_count + 1,
        )
