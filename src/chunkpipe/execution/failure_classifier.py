"""Deterministic attempt failure classification for worker retry policy."""

from __future__ import annotations

import signal
from dataclasses import dataclass

from chunkpipe.execution.runner import SIGNAL_EXIT_BASE
from chunkpipe.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1


@dataclass(slots=True)
class AttemptFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    retry: bool

    def to_tags(self) -> dict[str, str]:
        """Serialize classifier diagnostics for metadata records."""

        return {
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
        }


def classify_attempt_failure(
    *,
    exit_code: int,
    attempt: int,
    max_attempts: int,
    interrupted: bool = False,
    start_failed: bool = False,
    retry_fatal: bool = False,
) -> AttemptFailureClassification:
    """Classify a nonzero attempt outcome into a retry decision."""

    if interrupted:
        return AttemptFailureClassification(
            failure_class=FailureClass.INTERRUPTED,
            reason_code=f"interrupted_{signal_name(exit_code) or exit_code}",
            matched_rule="interrupted",
            retry=False,
        )

    reason = f"start_failed_{exit_code}" if start_failed else _exit_reason(exit_code)
    if attempt < max_attempts:
        return AttemptFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=reason,
            matched_rule="attempts_remaining",
            retry=True,
        )

    if retry_fatal:
        return AttemptFailureClassification(
            failure_class=FailureClass.FATAL,
            reason_code=reason,
            matched_rule="exhausted_fatal",
            retry=False,
        )

    return AttemptFailureClassification(
        failure_class=FailureClass.EXHAUSTED,
        reason_code=reason,
        matched_rule="exhausted_continue",
        retry=False,
    )


def signal_name(exit_code: int) -> str | None:
    """Name of the signal encoded in a ``128 + signum`` exit code, if any."""

    if exit_code <= SIGNAL_EXIT_BASE:
        return None
    try:
        return signal.Signals(exit_code - SIGNAL_EXIT_BASE).name
    except ValueError:
        return None


def _exit_reason(exit_code: int) -> str:
    name = signal_name(exit_code)
    if name is not None:
        return f"killed_by_{name}"
    return f"exit_{exit_code}"
