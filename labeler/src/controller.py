from __future__ import annotations

import logging
import random
import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from labeler.src.kube import KubeLabelStore, custom_labels_from_list
from labeler.src.lifecycle import LabelReconciler
from labeler.src.metrics import METRICS
from labeler.src.model import GROUP, PLURAL, VERSION, CustomLabel, NamespaceSnapshot
from labeler.src.workqueue import ReconcileQueue

CUSTOM_LABELS = "customlabels"
NAMESPACES = "namespaces"

CustomLabelKey = tuple[str, str]


def requests_for_namespace(
    namespace_name: str,
    namespace_labels: Mapping[str, str],
    custom_labels: Iterable[CustomLabel],
) -> set[CustomLabelKey]:
    """Map a namespace change to the ``CustomLabel`` keys that need another pass.

    A ``CustomLabel`` is selected when at least one of its desired labels is
    missing from the namespace or holds a different value, so externally
    reverted labels get noticed. Objects in other namespaces are ignored.
    """
    requests: set[CustomLabelKey] = set()
    for custom_label in custom_labels:
        if custom_label.namespace != namespace_name:
            continue
        if any(namespace_labels.get(k) != v for k, v in custom_label.custom_labels.items()):
            requests.add(custom_label.key)
    return requests


def _resource_version(obj: Any) -> str | None:
    """Return ``metadata.resourceVersion`` from either a dict or a client model."""
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        if isinstance(metadata, Mapping):
            return metadata.get("resourceVersion")
        return None
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


@dataclass(frozen=True)
class _WatchTarget:
    """One list-then-watch stream: what to list and what to do with the results."""

    resource: str
    list_fn: Callable[..., Any]
    on_list: Callable[[Any, bool], None]
    on_event: Callable[[str, Any], None]
    list_kwargs: dict[str, Any] = field(default_factory=dict)


class LabelController:
    """Feeds ``CustomLabel`` keys from two watch streams into a work queue and drains it.

    ``CustomLabel`` events (all namespaces) enqueue the object itself.
    Namespace events are mapped through :func:`requests_for_namespace` so
    only specifications whose labels drifted are re-run. A single worker
    (the thread calling :meth:`run_forever`) reconciles one key at a time;
    failed passes go back on the queue with exponential backoff.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        reconciler: LabelReconciler,
        store: KubeLabelStore,
        queue: ReconcileQueue | None = None,
        watch_timeout_seconds: int = 30,
        stop_join_timeout_seconds: float = 45.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.reconciler = reconciler
        self.store = store
        self.queue = queue or ReconcileQueue()
        self.watch_timeout_seconds = watch_timeout_seconds
        self.stop_join_timeout_seconds = stop_join_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self.fatal_error: str | None = None
        self._synced = {CUSTOM_LABELS: threading.Event(), NAMESPACES: threading.Event()}
        self._external_stop = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    def _custom_label_target(self) -> _WatchTarget:
        return _WatchTarget(
            resource=CUSTOM_LABELS,
            list_fn=self.custom_api.list_cluster_custom_object,
            list_kwargs={"group": GROUP, "version": VERSION, "plural": PLURAL},
            on_list=self._on_custom_label_list,
            on_event=self.handle_custom_label_event,
        )

    def _namespace_target(self) -> _WatchTarget:
        return _WatchTarget(
            resource=NAMESPACES,
            list_fn=self.core_api.list_namespace,
            on_list=self._on_namespace_list,
            on_event=self.handle_namespace_event,
        )

    def handle_custom_label_event(self, event_type: str, obj: Any) -> CustomLabelKey | None:
        """Enqueue the ``CustomLabel`` behind a watch event.

        ``DELETED`` is enqueued too; the pass finds the object gone and does
        nothing, which keeps the queue the single place decisions are made.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        if not isinstance(obj, Mapping):
            return None
        custom_label = CustomLabel.from_dict(obj)
        if not custom_label.name or not custom_label.namespace:
            self.logger.warning("Skipping CustomLabel event without name or namespace")
            return None
        self.queue.add(custom_label.key)
        return custom_label.key

    def handle_namespace_event(self, event_type: str, namespace: Any) -> set[CustomLabelKey]:
        """Enqueue every ``CustomLabel`` whose desired labels differ from the namespace's."""
        if event_type not in {"ADDED", "MODIFIED"}:
            return set()
        snapshot = NamespaceSnapshot.from_object(namespace)
        if not snapshot.name:
            return set()
        try:
            custom_labels = self.store.list_custom_labels(snapshot.name)
        except ApiException:
            self.logger.exception("Unable to list CustomLabels in namespace %s", snapshot.name)
            return set()

        requests = requests_for_namespace(snapshot.name, snapshot.labels, custom_labels)
        for key in sorted(requests):
            self.queue.add(key)
        if requests:
            self.logger.info(
                "Namespace %s labels drifted; re-queued %d CustomLabel(s)",
                snapshot.name,
                len(requests),
            )
        return requests

    def _on_custom_label_list(self, response: Any, relist: bool) -> None:
        for custom_label in custom_labels_from_list(response):
            if custom_label.name and custom_label.namespace:
                self.queue.add(custom_label.key)

    def _on_namespace_list(self, response: Any, relist: bool) -> None:
        """After a re-list, catch up on namespace drift missed while disconnected.

        The initial list needs no work: the initial ``CustomLabel`` list
        already queues every object.
        """
        if not relist:
            return
        by_namespace: dict[str, list[CustomLabel]] = defaultdict(list)
        for custom_label in self.store.list_custom_labels():
            by_namespace[custom_label.namespace].append(custom_label)

        for namespace in getattr(response, "items", None) or []:
            snapshot = NamespaceSnapshot.from_object(namespace)
            candidates = by_namespace.get(snapshot.name)
            if not candidates:
                continue
            for key in sorted(requests_for_namespace(snapshot.name, snapshot.labels, candidates)):
                self.queue.add(key)

    def process_next(self, timeout: float | None = 1.0) -> bool:
        """Reconcile the next queued key. Returns False if nothing was ready."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        namespace, name = key
        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(namespace, name)
        except ApiException as exc:
            delay = self.queue.retry(key)
            METRICS.reconciles_total.labels(result="error").inc()
            if exc.status == 409:
                self.logger.warning(
                    "Conflict reconciling %s/%s; retrying in %.1fs with a fresh read",
                    namespace,
                    name,
                    delay,
                )
            else:
                self.logger.exception(
                    "Reconciliation of %s/%s failed; retrying in %.1fs", namespace, name, delay
                )
        except Exception:
            delay = self.queue.retry(key)
            METRICS.reconciles_total.labels(result="error").inc()
            self.logger.exception(
                "Reconciliation of %s/%s failed; retrying in %.1fs", namespace, name, delay
            )
        else:
            self.queue.forget(key)
            METRICS.reconciles_total.labels(
                result="success" if result is not None else "not_found"
            ).inc()
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)
        return True

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watchers = list(self._active_watchers)
        for watcher in active_watchers:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    @property
    def watch_synced(self) -> Mapping[str, threading.Event]:
        """Per-watch events, set once that watch has handled its initial list."""
        return self._synced

    def _mark_synced(self, resource: str) -> None:
        self._synced[resource].set()
        if all(event.is_set() for event in self._synced.values()):
            self.ready.set()

    def _fail(self, resource: str, status: int | None, phase: str) -> None:
        """Stop the whole controller: auth failures will not fix themselves."""
        self.logger.error(
            "Kubernetes API access denied for %s during %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            resource,
            phase,
            status,
        )
        METRICS.watch_errors_total.labels(resource=resource).inc()
        self.fatal_error = f"{resource} {phase} denied with status {status}"
        self.ready.clear()
        self.request_stop()

    def watch_custom_labels(self, stop: threading.Event) -> None:
        self._run_watch(self._custom_label_target(), stop)

    def watch_namespaces(self, stop: threading.Event) -> None:
        self._run_watch(self._namespace_target(), stop)

    def _run_watch(self, target: _WatchTarget, stop: threading.Event) -> None:
        """List-then-watch *target* until stopped.

        1. Retries the initial list with jittered exponential backoff.
        2. Opens a watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists, hands the fresh list to ``on_list`` so
           missed changes are caught up, and resumes.
        4. On other errors backs off (1 s doubling to 30 s, with jitter).

        ``401`` / ``403`` stop the controller instead of retrying forever.
        """
        resource = target.resource
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = target.list_fn(**target.list_kwargs)
                resource_version = _resource_version(initial)
                target.on_list(initial, False)
                self._mark_synced(resource)
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", resource, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._fail(resource, exc.status, "initial list")
                    return
                self.logger.exception("Initial %s list failed", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    target.list_fn,
                    **target.list_kwargs,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_resource_version = _resource_version(obj)
                    if event_resource_version:
                        resource_version = event_resource_version
                    target.on_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", resource)
                    try:
                        fresh = target.list_fn(**target.list_kwargs)
                        resource_version = _resource_version(fresh)
                        target.on_list(fresh, True)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._fail(resource, relist_exc.status, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", resource)
                        METRICS.watch_errors_total.labels(resource=resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self._fail(resource, exc.status, "watch")
                    return

                self.logger.exception("Kubernetes API %s watch error", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start both watch streams and reconcile queued keys until shutdown."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        watchers = [
            threading.Thread(
                target=self.watch_custom_labels, args=(stop,), name="watch-customlabels", daemon=True
            ),
            threading.Thread(
                target=self.watch_namespaces, args=(stop,), name="watch-namespaces", daemon=True
            ),
        ]
        for thread in watchers:
            thread.start()

        while not self._should_stop(stop):
            self.process_next(timeout=1.0)

        self.request_stop()
        self.queue.shutdown()
        for thread in watchers:
            thread.join(timeout=self.stop_join_timeout_seconds)
            if thread.is_alive():
                self.logger.error("Watch thread %s did not stop in time", thread.name)
        self.ready.clear()
