from __future__ import annotations

from collections.abc import Mapping

from labeler.src.engine import (
    LabelDelta,
    Rejection,
    apply_plan,
    is_protected,
    owned_by_value,
    plan_cleanup,
    plan_labels,
)
from labeler.src.model import LabelStatus

PREFIXES = ("kubernetes.io",)


def applied(value: str) -> LabelStatus:
    return LabelStatus(applied=True, value=value)


def rejected(value: str) -> LabelStatus:
    return LabelStatus(applied=False, value=value)


def reconcile(
    desired: Mapping[str, str],
    previous: Mapping[str, LabelStatus],
    live: Mapping[str, str],
    prefixes: tuple[str, ...] = PREFIXES,
) -> LabelDelta:
    plan = plan_labels(desired, previous, live, prefixes)
    return apply_plan(plan, live, previous, prefixes)


# ---------------------------------------------------------------------------
# Worked scenarios
# ---------------------------------------------------------------------------


def test_first_reconcile_adds_every_label_to_empty_namespace() -> None:
    delta = reconcile({"a": "1", "b": "2"}, {}, {})

    assert delta.labels == {"a": "1", "b": "2"}
    assert delta.added == {"a": "1", "b": "2"}
    assert delta.rejected == {}


def test_foreign_label_is_rejected_and_left_untouched() -> None:
    delta = reconcile({"a": "1"}, {}, {"a": "9"})

    assert delta.labels == {"a": "9"}
    assert delta.added == {}
    assert delta.rejected == {"a": ("1", Rejection.CONFLICT)}


def test_edited_value_is_reapplied() -> None:
    delta = reconcile({"a": "2"}, {"a": applied("1")}, {"a": "1"})

    assert delta.labels == {"a": "2"}
    assert delta.added == {"a": "2"}


def test_label_dropped_from_spec_is_retracted() -> None:
    delta = reconcile(
        {"a": "1"},
        {"a": applied("1"), "b": applied("2")},
        {"a": "1", "b": "2"},
    )

    assert delta.labels == {"a": "1"}
    assert delta.removed == ("b",)
    assert delta.converged == {"a": "1"}


def test_protected_key_is_rejected_regardless_of_namespace_state() -> None:
    for live in ({}, {"kubernetes.io/role": "x"}):
        delta = reconcile({"kubernetes.io/role": "x"}, {}, live)

        assert delta.added == {}
        assert delta.rejected == {"kubernetes.io/role": ("x", Rejection.PROTECTED)}
        assert delta.labels == live


def test_key_protected_after_apply_is_retracted_and_rejected() -> None:
    delta = reconcile(
        {"kubernetes.io/role": "x", "team": "a"},
        {"kubernetes.io/role": applied("x"), "team": applied("a")},
        {"kubernetes.io/role": "x", "team": "a"},
    )

    assert delta.rejected == {"kubernetes.io/role": ("x", Rejection.PROTECTED)}
    assert delta.removed == ("kubernetes.io/role",)
    assert delta.labels == {"team": "a"}


def test_key_protected_after_apply_is_released_when_value_changed() -> None:
    delta = reconcile(
        {"kubernetes.io/role": "x"},
        {"kubernetes.io/role": applied("x")},
        {"kubernetes.io/role": "edited"},
    )

    assert delta.removed == ()
    assert delta.released == ("kubernetes.io/role",)
    assert delta.labels == {"kubernetes.io/role": "edited"}


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


def test_second_pass_without_changes_writes_nothing() -> None:
    first = reconcile({"a": "1", "b": "2"}, {}, {"team": "x"})
    previous = {k: applied(v) for k, v in first.added.items()}

    plan = plan_labels({"a": "1", "b": "2"}, previous, first.labels, PREFIXES)
    second = apply_plan(plan, first.labels, previous, PREFIXES)

    assert not plan.has_writes
    assert not second.changed
    assert second.labels == first.labels
    assert second.converged == {"a": "1", "b": "2"}


def test_conflict_rejection_is_stable_across_passes() -> None:
    first = reconcile({"a": "1"}, {}, {"a": "9"})
    second = reconcile({"a": "1"}, {"a": rejected("1")}, first.labels)

    assert second.labels == {"a": "9"}
    assert second.rejected == {"a": ("1", Rejection.CONFLICT)}


def test_previously_rejected_key_is_added_once_namespace_frees_it() -> None:
    delta = reconcile({"a": "1"}, {"a": rejected("1")}, {})

    assert delta.added == {"a": "1"}


def test_empty_spec_retracts_everything_applied() -> None:
    delta = reconcile({}, {"a": applied("1"), "b": applied("2"), "c": rejected("3")}, {
        "a": "1",
        "b": "2",
        "c": "other",
    })

    assert delta.removed == ("a", "b")
    assert delta.labels == {"c": "other"}
    assert delta.added == {}


def test_retraction_ignores_protected_prefixes() -> None:
    delta = reconcile({}, {"kubernetes.io/role": applied("x")}, {"kubernetes.io/role": "x"})

    assert delta.removed == ("kubernetes.io/role",)
    assert delta.labels == {}


def test_retraction_releases_label_changed_by_someone_else() -> None:
    delta = reconcile({}, {"b": applied("2")}, {"b": "changed"})

    assert delta.removed == ()
    assert delta.released == ("b",)
    assert delta.labels == {"b": "changed"}


def test_externally_removed_label_is_reapplied() -> None:
    delta = reconcile({"a": "1"}, {"a": applied("1")}, {})

    assert delta.added == {"a": "1"}
    assert delta.labels == {"a": "1"}


def test_externally_overwritten_label_is_restored() -> None:
    delta = reconcile({"a": "1"}, {"a": applied("1")}, {"a": "hijacked"})

    assert delta.added == {"a": "1"}
    assert delta.labels == {"a": "1"}


def test_processing_order_does_not_change_result() -> None:
    desired = {"z": "1", "a": "2", "m": "3"}
    live = {"m": "foreign"}
    forward = reconcile(desired, {}, live)
    backward = reconcile(dict(reversed(list(desired.items()))), {}, live)

    assert forward == backward


# ---------------------------------------------------------------------------
# Planning and apply-time re-validation
# ---------------------------------------------------------------------------


def test_plan_separates_adds_removals_converged_and_rejections() -> None:
    plan = plan_labels(
        {"new": "1", "same": "2", "foreign": "3", "kubernetes.io/x": "4"},
        {"same": applied("2"), "gone": applied("5")},
        {"same": "2", "foreign": "other", "gone": "5"},
        PREFIXES,
    )

    assert plan.to_add == {"new": "1"}
    assert plan.converged == {"same": "2"}
    assert plan.to_remove == ("gone",)
    assert plan.rejected == {
        "foreign": ("3", Rejection.CONFLICT),
        "kubernetes.io/x": ("4", Rejection.PROTECTED),
    }
    assert plan.has_writes


def test_apply_rejects_key_claimed_after_planning() -> None:
    plan = plan_labels({"a": "1"}, {}, {}, PREFIXES)
    fresh = {"a": "someone-else"}

    delta = apply_plan(plan, fresh, {}, PREFIXES)

    assert delta.added == {}
    assert delta.rejected == {"a": ("1", Rejection.CONFLICT)}
    assert delta.labels == fresh


def test_apply_treats_matching_live_value_as_converged() -> None:
    plan = plan_labels({"a": "2"}, {"a": applied("1")}, {"a": "1"}, PREFIXES)

    delta = apply_plan(plan, {"a": "2"}, {"a": applied("1")}, PREFIXES)

    assert delta.added == {}
    assert delta.converged == {"a": "2"}
    assert not delta.changed


def test_apply_does_not_mutate_live_labels() -> None:
    live = {"b": "2"}
    plan = plan_labels({"a": "1"}, {"b": applied("2")}, live, PREFIXES)

    apply_plan(plan, live, {"b": applied("2")}, PREFIXES)

    assert live == {"b": "2"}


def test_cleanup_plan_retracts_only_applied_keys() -> None:
    previous = {"a": applied("1"), "b": rejected("2")}
    live = {"a": "1", "b": "foreign"}

    plan = plan_cleanup(previous, live)
    delta = apply_plan(plan, live, previous, ())

    assert plan.to_add == {}
    assert delta.removed == ("a",)
    assert delta.labels == {"b": "foreign"}


def test_ownership_policy_is_replaceable() -> None:
    previous = {"b": applied("2")}
    live = {"b": "2"}
    plan = plan_labels({}, previous, live, PREFIXES)

    delta = apply_plan(plan, live, previous, PREFIXES, ownership=lambda *_: False)

    assert delta.removed == ()
    assert delta.released == ("b",)
    assert delta.labels == {"b": "2"}


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------


def test_owned_by_value_requires_applied_status_and_equal_value() -> None:
    assert owned_by_value("a", {"a": "1"}, applied("1"))
    assert not owned_by_value("a", {"a": "2"}, applied("1"))
    assert not owned_by_value("a", {"a": "1"}, rejected("1"))
    assert not owned_by_value("a", {}, applied("1"))
    assert not owned_by_value("a", {"a": "1"}, None)


def test_is_protected_matches_substrings_and_ignores_blank_entries() -> None:
    assert is_protected("kubernetes.io/role", ["kubernetes.io"])
    assert is_protected("node-role.kubernetes.io/worker", ["kubernetes.io"])
    assert not is_protected("team", ["kubernetes.io"])
    assert not is_protected("team", ["", "k8s.io"])
