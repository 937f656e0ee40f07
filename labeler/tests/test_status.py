from __future__ import annotations

from labeler.src.engine import LabelDelta, Rejection
from labeler.src.model import CustomLabel, LabelStatus
from labeler.src.status import (
    APPLIED_MESSAGE,
    NO_CHANGES_MESSAGE,
    build_status,
    error_status,
)


def make_delta(**overrides: object) -> LabelDelta:
    fields: dict[str, object] = {
        "labels": {},
        "added": {},
        "removed": (),
        "released": (),
        "converged": {},
        "rejected": {},
    }
    fields.update(overrides)
    return LabelDelta(**fields)  # type: ignore[arg-type]


def test_added_and_converged_keys_are_recorded_as_applied() -> None:
    status = build_status(make_delta(added={"a": "1"}, converged={"b": "2"}))

    assert status.per_label_status == {
        "a": LabelStatus(applied=True, value="1"),
        "b": LabelStatus(applied=True, value="2"),
    }
    assert status.message == APPLIED_MESSAGE


def test_converged_labels_keep_applied_message() -> None:
    status = build_status(make_delta(converged={"a": "1"}))

    assert status.message == APPLIED_MESSAGE


def test_no_live_labels_reports_no_new_labels() -> None:
    assert build_status(make_delta()).message == NO_CHANGES_MESSAGE


def test_full_retraction_reports_no_new_labels() -> None:
    status = build_status(make_delta(removed=("b",)))

    assert status.per_label_status == {}
    assert status.message == NO_CHANGES_MESSAGE


def test_rejected_keys_are_recorded_unapplied_and_named_in_message() -> None:
    status = build_status(
        make_delta(
            rejected={
                "z": ("1", Rejection.CONFLICT),
                "kubernetes.io/role": ("x", Rejection.PROTECTED),
            }
        )
    )

    assert status.per_label_status == {
        "z": LabelStatus(applied=False, value="1"),
        "kubernetes.io/role": LabelStatus(applied=False, value="x"),
    }
    assert status.message == f"{NO_CHANGES_MESSAGE}; rejected labels: kubernetes.io/role, z"


def test_retracted_and_released_keys_are_dropped() -> None:
    status = build_status(make_delta(removed=("a",), released=("b",), converged={"c": "3"}))

    assert set(status.per_label_status) == {"c"}


def test_matches_compares_status_and_message() -> None:
    custom_label = CustomLabel(
        name="labels",
        namespace="team-a",
        custom_labels={"a": "1"},
        per_label_status={"a": LabelStatus(applied=True, value="1")},
        message=APPLIED_MESSAGE,
    )

    assert build_status(make_delta(converged={"a": "1"})).matches(custom_label)
    assert build_status(make_delta(added={"a": "1"})).matches(custom_label)
    assert not build_status(
        make_delta(rejected={"a": ("1", Rejection.CONFLICT)})
    ).matches(custom_label)


def test_error_status_keeps_previous_records() -> None:
    previous = {"a": LabelStatus(applied=True, value="1")}

    status = error_status(previous, "namespace team-a not found")

    assert status.per_label_status == previous
    assert status.per_label_status is not previous
    assert status.message == "namespace team-a not found"
