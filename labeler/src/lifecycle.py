from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from kubernetes.client import ApiException

from labeler.src.engine import (
    LabelDelta,
    LabelPlan,
    OwnershipPolicy,
    apply_plan,
    owned_by_value,
    plan_cleanup,
    plan_labels,
)
from labeler.src.kube import KubeLabelStore, NamespaceNotFoundError, describe_error
from labeler.src.metrics import METRICS
from labeler.src.model import FINALIZER, CustomLabel, NamespaceSnapshot
from labeler.src.status import build_status, error_status


class FinalizerState(enum.Enum):
    """Where a ``CustomLabel`` stands in the finalizer protocol.

    ``NO_FINALIZER -> FINALIZER_ATTACHED -> CLEANING -> REMOVED``. ``REMOVED``
    is terminal: the API server is free to purge the object.
    """

    NO_FINALIZER = "NoFinalizer"
    FINALIZER_ATTACHED = "FinalizerAttached"
    CLEANING = "Cleaning"
    REMOVED = "Removed"


def finalizer_state(custom_label: CustomLabel) -> FinalizerState:
    attached = FINALIZER in custom_label.finalizers
    if custom_label.being_deleted:
        return FinalizerState.CLEANING if attached else FinalizerState.REMOVED
    return FinalizerState.FINALIZER_ATTACHED if attached else FinalizerState.NO_FINALIZER


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconciliation pass over a ``CustomLabel``.

    ``state`` is what was observed, ``next_state`` what the pass left behind.
    """

    namespace: str
    name: str
    state: FinalizerState
    next_state: FinalizerState
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    rejected: tuple[str, ...] = ()
    message: str | None = None


class LabelReconciler:
    """Drives one ``CustomLabel`` through the finalizer state machine.

    Every pass re-reads the ``CustomLabel`` and its namespace, dispatches on
    :class:`FinalizerState` and performs at most one namespace write and one
    object or status write. Write failures are recorded in ``status.message``
    when possible and re-raised so the work queue retries the whole pass;
    nothing is retried here.
    """

    def __init__(
        self,
        store: KubeLabelStore,
        protected_prefixes: Iterable[str],
        ownership: OwnershipPolicy = owned_by_value,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.protected_prefixes = tuple(protected_prefixes)
        self.ownership = ownership
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: dict[
            FinalizerState, Callable[[CustomLabel, NamespaceSnapshot], ReconcileResult]
        ] = {
            FinalizerState.NO_FINALIZER: self._attach_finalizer,
            FinalizerState.FINALIZER_ATTACHED: self._sync_labels,
            FinalizerState.CLEANING: self._clean_up,
        }

    def reconcile(self, namespace: str, name: str) -> ReconcileResult | None:
        """Run one pass for ``namespace/name``.

        Returns None when the object is gone; raises :class:`ApiException` or
        :class:`NamespaceNotFoundError` when the pass must be retried.
        """
        custom_label = self.store.get_custom_label(namespace, name)
        if custom_label is None:
            self.logger.info("CustomLabel %s/%s not found; nothing to do", namespace, name)
            return None

        state = finalizer_state(custom_label)
        if state is FinalizerState.REMOVED:
            self.logger.debug(
                "CustomLabel %s/%s is being deleted and already finalized", namespace, name
            )
            return ReconcileResult(
                namespace=namespace, name=name, state=state, next_state=state
            )

        try:
            snapshot = self.store.read_namespace(custom_label.namespace)
        except NamespaceNotFoundError as exc:
            self.logger.error("Unable to find namespace %s", custom_label.namespace)
            self._record_failure(custom_label, describe_error(exc))
            raise

        return self._handlers[state](custom_label, snapshot)

    def _attach_finalizer(
        self, custom_label: CustomLabel, snapshot: NamespaceSnapshot
    ) -> ReconcileResult:
        # Labels are not touched in this pass: the update event caused by the
        # finalizer write triggers the next one.
        try:
            self.store.replace_finalizers(custom_label, [*custom_label.finalizers, FINALIZER])
        except ApiException as exc:
            self.logger.error(
                "Unable to add finalizer to %s/%s", custom_label.namespace, custom_label.name
            )
            self._record_failure(custom_label, describe_error(exc))
            raise
        METRICS.finalizer_transitions_total.labels(transition="attached").inc()
        self.logger.info(
            "Added finalizer to CustomLabel %s/%s",
            custom_label.namespace,
            custom_label.name,
            extra=_context(custom_label),
        )
        return ReconcileResult(
            namespace=custom_label.namespace,
            name=custom_label.name,
            state=FinalizerState.NO_FINALIZER,
            next_state=FinalizerState.FINALIZER_ATTACHED,
        )

    def _sync_labels(
        self, custom_label: CustomLabel, snapshot: NamespaceSnapshot
    ) -> ReconcileResult:
        plan = plan_labels(
            custom_label.custom_labels,
            custom_label.per_label_status,
            snapshot.labels,
            self.protected_prefixes,
        )
        delta = self._apply(custom_label, plan, snapshot)
        status = build_status(delta)
        if status.matches(custom_label):
            self.logger.debug(
                "Status of %s/%s unchanged; skipping write",
                custom_label.namespace,
                custom_label.name,
            )
        else:
            self.store.patch_status(custom_label, status.per_label_status, status.message)

        self._record_delta(delta)
        if delta.rejected:
            rejected_text = ", ".join(
                f"{key} ({reason.value})" for key, (_, reason) in sorted(delta.rejected.items())
            )
            self.logger.warning(
                "Rejected labels for %s/%s: %s",
                custom_label.namespace,
                custom_label.name,
                rejected_text,
                extra=_context(custom_label),
            )
        return ReconcileResult(
            namespace=custom_label.namespace,
            name=custom_label.name,
            state=FinalizerState.FINALIZER_ATTACHED,
            next_state=FinalizerState.FINALIZER_ATTACHED,
            added=tuple(sorted(delta.added)),
            removed=delta.removed,
            rejected=tuple(sorted(delta.rejected)),
            message=status.message,
        )

    def _clean_up(self, custom_label: CustomLabel, snapshot: NamespaceSnapshot) -> ReconcileResult:
        self.logger.info(
            "Deleting labels of CustomLabel %s/%s from namespace",
            custom_label.namespace,
            custom_label.name,
            extra=_context(custom_label),
        )
        plan = plan_cleanup(custom_label.per_label_status, snapshot.labels)
        delta = self._apply(custom_label, plan, snapshot)
        self._record_delta(delta)

        remaining = [f for f in custom_label.finalizers if f != FINALIZER]
        try:
            self.store.replace_finalizers(custom_label, remaining)
        except ApiException as exc:
            self.logger.error(
                "Unable to remove finalizer from %s/%s", custom_label.namespace, custom_label.name
            )
            self._record_failure(custom_label, describe_error(exc))
            raise
        METRICS.finalizer_transitions_total.labels(transition="removed").inc()
        self.logger.info(
            "Removed finalizer from CustomLabel %s/%s",
            custom_label.namespace,
            custom_label.name,
            extra=_context(custom_label),
        )
        return ReconcileResult(
            namespace=custom_label.namespace,
            name=custom_label.name,
            state=FinalizerState.CLEANING,
            next_state=FinalizerState.REMOVED,
            removed=delta.removed,
        )

    def _apply(
        self, custom_label: CustomLabel, plan: LabelPlan, snapshot: NamespaceSnapshot
    ) -> LabelDelta:
        """Apply *plan*, re-reading the namespace first when anything may be written."""
        if not plan.has_writes:
            return apply_plan(
                plan,
                snapshot.labels,
                custom_label.per_label_status,
                self.protected_prefixes,
                self.ownership,
            )

        try:
            fresh = self.store.read_namespace(snapshot.name)
            delta = apply_plan(
                plan,
                fresh.labels,
                custom_label.per_label_status,
                self.protected_prefixes,
                self.ownership,
            )
            if delta.changed:
                self.store.replace_namespace_labels(fresh, delta.labels)
        except (ApiException, NamespaceNotFoundError) as exc:
            self.logger.error(
                "Unable to update labels of namespace %s for %s/%s",
                snapshot.name,
                custom_label.namespace,
                custom_label.name,
            )
            self._record_failure(custom_label, describe_error(exc))
            raise

        if delta.changed:
            self.logger.info(
                "Updated namespace %s labels (added=%s removed=%s)",
                snapshot.name,
                sorted(delta.added),
                list(delta.removed),
                extra=_context(custom_label),
            )
        return delta

    def _record_failure(self, custom_label: CustomLabel, message: str) -> None:
        """Best-effort write of *message* to ``status.message``; the caller re-raises."""
        update = error_status(custom_label.per_label_status, message)
        if update.matches(custom_label):
            return
        try:
            self.store.patch_status(custom_label, update.per_label_status, update.message)
        except ApiException:
            self.logger.warning(
                "Unable to record error in status of %s/%s",
                custom_label.namespace,
                custom_label.name,
                exc_info=True,
            )

    @staticmethod
    def _record_delta(delta: LabelDelta) -> None:
        METRICS.labels_applied_total.inc(len(delta.added))
        METRICS.labels_removed_total.inc(len(delta.removed))
        for _, reason in delta.rejected.values():
            METRICS.labels_rejected_total.labels(reason=reason.value).inc()


def _context(custom_label: CustomLabel) -> dict[str, str]:
    return {"customlabel": custom_label.name, "namespace": custom_label.namespace}
