from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

GROUP = "labels.dvir.io"
VERSION = "v1"
PLURAL = "customlabels"
KIND = "CustomLabel"
FINALIZER = "labels.dvir.io/finalizer"


@dataclass(frozen=True)
class LabelStatus:
    """Last value the controller believes is live under a key, and whether it got there."""

    applied: bool
    value: str

    def to_dict(self) -> dict[str, Any]:
        return {"applied": self.applied, "value": self.value}

    @classmethod
    def from_dict(cls, raw: Any) -> LabelStatus:
        """Read a status entry leniently.

        Anything that is not a mapping, or that lacks ``applied``, is read as
        "not applied" so a hand-edited status can never make the controller
        delete a label it does not own.
        """
        if not isinstance(raw, Mapping):
            return cls(applied=False, value="")
        value = raw.get("value")
        return cls(
            applied=raw.get("applied") is True,
            value="" if value is None else str(value),
        )


def parse_per_label_status(raw: Any) -> dict[str, LabelStatus]:
    if not isinstance(raw, Mapping):
        return {}
    return {k: LabelStatus.from_dict(v) for k, v in raw.items() if isinstance(k, str)}


def dump_per_label_status(statuses: Mapping[str, LabelStatus]) -> dict[str, dict[str, Any]]:
    return {k: statuses[k].to_dict() for k in sorted(statuses)}


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


@dataclass(frozen=True)
class CustomLabel:
    """Typed view over a ``CustomLabel`` object as returned by ``CustomObjectsApi``.

    The original dict is kept in ``raw`` so write bodies carry every field the
    API server returned, including ``metadata.resourceVersion`` for
    optimistic concurrency.
    """

    name: str
    namespace: str
    custom_labels: dict[str, str]
    per_label_status: dict[str, LabelStatus]
    message: str = ""
    finalizers: tuple[str, ...] = ()
    deletion_timestamp: str | None = None
    resource_version: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> CustomLabel:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        finalizers = metadata.get("finalizers") or []
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            custom_labels=_string_map(spec.get("customLabels")),
            per_label_status=parse_per_label_status(status.get("perLabelStatus")),
            message=str(status.get("message") or ""),
            finalizers=tuple(f for f in finalizers if isinstance(f, str)),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
            raw=copy.deepcopy(dict(obj)),
        )

    def body_with_finalizers(self, finalizers: list[str]) -> dict[str, Any]:
        """Return a full replace body with ``metadata.finalizers`` swapped out."""
        body = copy.deepcopy(self.raw)
        body.setdefault("metadata", {})["finalizers"] = finalizers
        return body

    def status_patch(
        self, per_label_status: Mapping[str, LabelStatus], message: str
    ) -> dict[str, Any]:
        """Return a JSON merge patch turning the current status into the given one.

        Keys recorded now but absent from *per_label_status* are set to None,
        which a merge patch deletes. No ``resourceVersion`` is sent, so a spec
        edit made since the read does not reject the status write.
        """
        entries: dict[str, Any] = dict.fromkeys(
            sorted(set(self.per_label_status) - set(per_label_status))
        )
        entries.update(dump_per_label_status(per_label_status))
        return {"status": {"perLabelStatus": entries, "message": message or None}}


@dataclass(frozen=True)
class NamespaceSnapshot:
    """Labels of a namespace as of one read, plus what is needed to write them back."""

    name: str
    labels: dict[str, str]
    resource_version: str | None
    obj: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def from_object(cls, namespace: Any) -> NamespaceSnapshot:
        metadata = getattr(namespace, "metadata", None)
        return cls(
            name=getattr(metadata, "name", None) or "",
            labels=_string_map(getattr(metadata, "labels", None)),
            resource_version=getattr(metadata, "resource_version", None),
            obj=namespace,
        )
