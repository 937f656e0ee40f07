from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from labeler.src.model import GROUP, PLURAL, VERSION, CustomLabel, LabelStatus, NamespaceSnapshot

LOGGER = logging.getLogger(__name__)


class NamespaceNotFoundError(LookupError):
    """Raised when the namespace a ``CustomLabel`` lives in cannot be read."""

    def __init__(self, name: str) -> None:
        super().__init__(f"namespace {name} not found")
        self.name = name


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def custom_labels_from_list(response: Any) -> list[CustomLabel]:
    """Parse the dict returned by a ``CustomObjectsApi`` list call."""
    items = response.get("items") if isinstance(response, Mapping) else None
    return [CustomLabel.from_dict(item) for item in items or [] if isinstance(item, Mapping)]


def describe_error(exc: BaseException) -> str:
    """Short, single-line text for an error, suitable for ``status.message``."""
    if isinstance(exc, ApiException):
        return f"kubernetes API error {exc.status}: {exc.reason}"
    return str(exc) or type(exc).__name__


class KubeLabelStore:
    """Reads and writes ``CustomLabel`` objects and namespace labels.

    Finalizer and namespace writes are full replaces carrying the
    ``resourceVersion`` of the read they are based on, so a concurrent
    modification fails with ``409 Conflict`` instead of being merged blindly.
    Status is merge-patched. Errors other than the ones translated
    below propagate as :class:`ApiException`.
    """

    def __init__(self, core_api: CoreV1Api, custom_api: CustomObjectsApi) -> None:
        self.core_api = core_api
        self.custom_api = custom_api

    def get_custom_label(self, namespace: str, name: str) -> CustomLabel | None:
        """Return the ``CustomLabel``, or None if it no longer exists."""
        try:
            obj = self.custom_api.get_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return CustomLabel.from_dict(obj)

    def list_custom_labels(self, namespace: str | None = None) -> list[CustomLabel]:
        """List ``CustomLabel`` objects in *namespace*, or in every namespace if None."""
        if namespace is None:
            response = self.custom_api.list_cluster_custom_object(
                group=GROUP,
                version=VERSION,
                plural=PLURAL,
            )
        else:
            response = self.custom_api.list_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=namespace,
                plural=PLURAL,
            )
        return custom_labels_from_list(response)

    def replace_finalizers(self, custom_label: CustomLabel, finalizers: list[str]) -> None:
        self.custom_api.replace_namespaced_custom_object(
            group=GROUP,
            version=VERSION,
            namespace=custom_label.namespace,
            plural=PLURAL,
            name=custom_label.name,
            body=custom_label.body_with_finalizers(finalizers),
        )

    def patch_status(
        self,
        custom_label: CustomLabel,
        per_label_status: Mapping[str, LabelStatus],
        message: str,
    ) -> None:
        """Merge-patch the status subresource.

        Unlike the other writes this one carries no ``resourceVersion``: a
        namespace write that already happened must be recorded even if the
        spec changed in between.
        """
        self.custom_api.patch_namespaced_custom_object_status(
            group=GROUP,
            version=VERSION,
            namespace=custom_label.namespace,
            plural=PLURAL,
            name=custom_label.name,
            body=custom_label.status_patch(per_label_status, message),
        )

    def read_namespace(self, name: str) -> NamespaceSnapshot:
        try:
            namespace = self.core_api.read_namespace(name=name)
        except ApiException as exc:
            if exc.status == 404:
                raise NamespaceNotFoundError(name) from exc
            raise
        return NamespaceSnapshot.from_object(namespace)

    def replace_namespace_labels(self, snapshot: NamespaceSnapshot, labels: dict[str, str]) -> None:
        """Write *labels* as the complete label map of the namespace read in *snapshot*.

        A replace, not a merge patch, so removed keys actually disappear and a
        stale ``resourceVersion`` is rejected by the API server.
        """
        body: Any = snapshot.obj
        body.metadata.labels = dict(labels)
        body.metadata.resource_version = snapshot.resource_version
        self.core_api.replace_namespace(name=snapshot.name, body=body)
