"""Command execution for chunk attempts."""

from chunkpipe.execution.failure_classifier import (
    AttemptFailureClassification,
    classify_attempt_failure,
)
from chunkpipe.execution.runner import (
    CommandRunError,
    CommandRunner,
    CommandRunRequest,
    CommandRunResult,
    ResourceUsage,
    render_argv,
)

__all__ = [
    "AttemptFailureClassification",
    "CommandRunError",
    "CommandRunRequest",
    "CommandRunResult",
    "CommandRunner",
    "ResourceUsage",
    "classify_attempt_failure",
    "render_argv",
]
