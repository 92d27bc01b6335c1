"""Deterministic job failure classification for the worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from recon_queue.worker.errors import JobError

JOB_FAILURE_CLASSIFIER_VERSION = 1

# Untyped exceptions only; typed JobError failures are classified by kind.
_RETRIABLE_PATTERNS: tuple[str, ...] = (
    "project directory not found",
    "not yet visible",
    "connection refused",
    "connection reset",
    "network",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "no space left on device",
    "resource exhausted",
    "out of memory",
)
_FATAL_PATTERNS: tuple[str, ...] = (
    "command failed",
    "invalid",
    "corrupt",
    "permission denied",
)


@dataclass(slots=True, frozen=True)
class JobFailureClassification:
    """Normalized failure classification result."""

    retriable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_log_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for structured logging."""

        return {
            "classifier_version": JOB_FAILURE_CLASSIFIER_VERSION,
            "retriable": self.retriable,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_job_failure(
    error: BaseException,
    *,
    retry_unclassified: bool = True,
) -> JobFailureClassification:
    """Classify a pipeline failure into retriable or fatal."""

    if isinstance(error, JobError):
        return JobFailureClassification(
            retriable=error.retriable,
            reason_code=error.kind.value,
            matched_rule="error_kind",
            matched_pattern=None,
        )

    haystack = str(error).lower()

    pattern = _first_match(haystack, _RETRIABLE_PATTERNS)
    if pattern is not None:
        return JobFailureClassification(
            retriable=True,
            reason_code="transient",
            matched_rule="retriable_pattern",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _FATAL_PATTERNS)
    if pattern is not None:
        return JobFailureClassification(
            retriable=False,
            reason_code="fatal",
            matched_rule="fatal_pattern",
            matched_pattern=pattern,
        )

    return JobFailureClassification(
        retriable=retry_unclassified,
        reason_code="unclassified",
        matched_rule="fallback_retriable" if retry_unclassified else "fallback_fatal",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
