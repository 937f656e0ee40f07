from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from labeler.src.engine import LabelDelta
from labeler.src.model import CustomLabel, LabelStatus

APPLIED_MESSAGE = "labels applied"
NO_CHANGES_MESSAGE = "no new labels to add"


@dataclass(frozen=True)
class StatusUpdate:
    """Next ``status`` of a ``CustomLabel``: per-label records plus a summary message."""

    per_label_status: dict[str, LabelStatus]
    message: str

    def matches(self, custom_label: CustomLabel) -> bool:
        """Return True if writing this update would not change *custom_label*'s status."""
        return (
            self.per_label_status == custom_label.per_label_status
            and self.message == custom_label.message
        )


def build_status(delta: LabelDelta) -> StatusUpdate:
    """Fold the outcome of one reconciliation into the next status.

    Only keys that are still desired appear: applied and converged keys as
    ``applied=True``, rejected keys as ``applied=False``. Retracted and
    released keys are dropped. The message is ``labels applied`` while at
    least one label is live, ``no new labels to add`` otherwise.
    """
    statuses: dict[str, LabelStatus] = {}
    for key, value in delta.converged.items():
        statuses[key] = LabelStatus(applied=True, value=value)
    for key, value in delta.added.items():
        statuses[key] = LabelStatus(applied=True, value=value)
    for key, (value, _) in delta.rejected.items():
        statuses[key] = LabelStatus(applied=False, value=value)

    # State-derived: a converged object gets the same message on every pass.
    applied_any = any(status.applied for status in statuses.values())
    message = APPLIED_MESSAGE if applied_any else NO_CHANGES_MESSAGE
    if delta.rejected:
        message = f"{message}; rejected labels: {', '.join(sorted(delta.rejected))}"
    return StatusUpdate(per_label_status=statuses, message=message)


def error_status(previous: Mapping[str, LabelStatus], message: str) -> StatusUpdate:
    """Status to record when a durable write failed: keep per-label state, surface the error."""
    return StatusUpdate(per_label_status=dict(previous), message=message)
