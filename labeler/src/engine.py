from __future__ import annotations

import enum
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from labeler.src.model import LabelStatus

OwnershipPolicy = Callable[[str, Mapping[str, str], LabelStatus | None], bool]


class Rejection(str, enum.Enum):
    """Why a desired label was not written to the namespace."""

    PROTECTED = "protected"
    CONFLICT = "conflict"


def owned_by_value(key: str, live_labels: Mapping[str, str], recorded: LabelStatus | None) -> bool:
    """Default ownership policy: a live label is ours if it still holds the value we applied.

    There is no owner marker on the namespace, so two ``CustomLabel`` objects
    that happen to want the same key and value are indistinguishable here.
    Swap this function out (``ownership=`` on :func:`apply_plan`) for a
    stricter scheme.
    """
    if recorded is None or not recorded.applied:
        return False
    return key in live_labels and live_labels[key] == recorded.value


def is_protected(key: str, protected_prefixes: Iterable[str]) -> bool:
    """Return True if *key* contains any protected substring.

    Matching is by substring, not prefix: ``kubernetes.io`` protects
    ``kubernetes.io/role`` as well as ``node-role.kubernetes.io/x``.
    """
    return any(prefix and prefix in key for prefix in protected_prefixes)


def rejection_reason(
    key: str,
    live_labels: Mapping[str, str],
    recorded: LabelStatus | None,
    protected_prefixes: Iterable[str],
) -> Rejection | None:
    if is_protected(key, protected_prefixes):
        return Rejection.PROTECTED
    previously_applied = recorded is not None and recorded.applied
    if key in live_labels and not previously_applied:
        return Rejection.CONFLICT
    return None


@dataclass(frozen=True)
class LabelPlan:
    """What one reconciliation intends to do, computed from a single namespace read."""

    to_add: dict[str, str]
    to_remove: tuple[str, ...]
    converged: dict[str, str]
    rejected: dict[str, tuple[str, Rejection]]

    @property
    def has_writes(self) -> bool:
        return bool(self.to_add or self.to_remove)


@dataclass(frozen=True)
class LabelDelta:
    """Per-key outcome of applying a :class:`LabelPlan` to a namespace label map.

    ``labels`` is the full label map to write back. ``released`` holds keys
    we had applied but whose live value was changed by someone else; they are
    left in place and forgotten.
    """

    labels: dict[str, str]
    added: dict[str, str]
    removed: tuple[str, ...]
    released: tuple[str, ...]
    converged: dict[str, str]
    rejected: dict[str, tuple[str, Rejection]]

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def plan_labels(
    desired: Mapping[str, str],
    previous: Mapping[str, LabelStatus],
    live_labels: Mapping[str, str],
    protected_prefixes: Iterable[str],
) -> LabelPlan:
    """Diff desired labels against recorded status and the live namespace.

    Per desired key: protected or foreign keys are rejected, keys we applied
    with the same value that are still live are converged, everything else is
    a candidate add. Keys we applied that are no longer desired, or that now
    fall under a protected prefix, are scheduled for removal regardless of
    protected prefixes, since an owner may always retract its own label.
    """
    prefixes = tuple(protected_prefixes)
    to_add: dict[str, str] = {}
    converged: dict[str, str] = {}
    rejected: dict[str, tuple[str, Rejection]] = {}
    retract: list[str] = []

    for key in sorted(desired):
        value = desired[key]
        recorded = previous.get(key)
        reason = rejection_reason(key, live_labels, recorded, prefixes)
        if reason is not None:
            rejected[key] = (value, reason)
            # A key protected after we applied it is still ours to take back.
            if reason is Rejection.PROTECTED and recorded is not None and recorded.applied:
                retract.append(key)
        elif (
            recorded is not None
            and recorded.applied
            and recorded.value == value
            and live_labels.get(key) == value
        ):
            converged[key] = value
        else:
            to_add[key] = value

    retract.extend(
        key for key, status in previous.items() if status.applied and key not in desired
    )
    to_remove = tuple(sorted(retract))
    return LabelPlan(to_add=to_add, to_remove=to_remove, converged=converged, rejected=rejected)


def plan_cleanup(
    previous: Mapping[str, LabelStatus], live_labels: Mapping[str, str]
) -> LabelPlan:
    """Plan the full retraction run when a ``CustomLabel`` is deleted."""
    return plan_labels({}, previous, live_labels, ())


def apply_plan(
    plan: LabelPlan,
    live_labels: Mapping[str, str],
    previous: Mapping[str, LabelStatus],
    protected_prefixes: Iterable[str],
    ownership: OwnershipPolicy = owned_by_value,
) -> LabelDelta:
    """Apply *plan* to a fresh copy of the namespace labels.

    Adds are re-checked against *live_labels* because another writer may have
    claimed a key between planning and now. Nothing here talks to the API;
    the caller writes ``delta.labels`` back.
    """
    prefixes = tuple(protected_prefixes)
    labels = dict(live_labels)
    added: dict[str, str] = {}
    removed: list[str] = []
    released: list[str] = []
    converged: dict[str, str] = {}
    rejected = dict(plan.rejected)

    for key in plan.to_remove:
        if ownership(key, labels, previous.get(key)):
            del labels[key]
            removed.append(key)
        else:
            released.append(key)

    # Converged keys are re-checked too; the fresh read may no longer hold them.
    for key, value in sorted({**plan.converged, **plan.to_add}.items()):
        reason = rejection_reason(key, labels, previous.get(key), prefixes)
        if reason is not None:
            rejected[key] = (value, reason)
            continue
        if labels.get(key) == value:
            converged[key] = value
            continue
        labels[key] = value
        added[key] = value

    return LabelDelta(
        labels=labels,
        added=added,
        removed=tuple(removed),
        released=tuple(released),
        converged=converged,
        rejected=rejected,
    )
