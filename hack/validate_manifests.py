#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

GROUP = "labels.dvir.io"
PLURAL = "customlabels"
CRD_NAME = f"{PLURAL}.{GROUP}"
CONTROLLER_NAME = "customlabel-controller"
REQUIRED_ENV = {"PROTECTED_PREFIXES"}
REQUIRED_RULES: dict[tuple[str, str], set[str]] = {
    (GROUP, "customlabels"): {"get", "list", "watch", "update"},
    (GROUP, "customlabels/status"): {"get", "patch"},
    (GROUP, "customlabels/finalizers"): {"update"},
    ("", "namespaces"): {"get", "list", "watch", "update"},
}
PROBE_PATHS = {"livenessProbe": "/healthz", "readinessProbe": "/readyz"}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate controller manifest invariants")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path(__file__).resolve().parents[1] / "config",
        help="Directory holding the crd/, rbac/, manager/ and samples/ manifests",
    )
    return parser.parse_args()


def load_documents(config_dir: Path) -> list[dict[str, Any]]:
    docs: list[dict[str, Any]] = []
    for path in sorted(config_dir.rglob("*.yaml")):
        with path.open(encoding="utf-8") as handle:
            docs.extend(doc for doc in yaml.safe_load_all(handle) if isinstance(doc, dict))
    return docs


def _metadata_name(doc: dict[str, Any]) -> str:
    metadata = doc.get("metadata")
    if not isinstance(metadata, dict):
        return ""
    name = metadata.get("name")
    return name if isinstance(name, str) else ""


def _kind(doc: dict[str, Any]) -> str:
    kind = doc.get("kind")
    return kind if isinstance(kind, str) else ""


def _find_resource(docs: Iterable[dict[str, Any]], kind: str, name: str) -> dict[str, Any] | None:
    for doc in docs:
        if _kind(doc) == kind and _metadata_name(doc) == name:
            return doc
    return None


def validate_crd(doc: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    spec = doc.get("spec") or {}
    if spec.get("group") != GROUP:
        errors.append(f"CRD group must be {GROUP}")
    if spec.get("scope") != "Namespaced":
        errors.append("CRD scope must be Namespaced")
    names = spec.get("names") or {}
    if names.get("plural") != PLURAL or names.get("kind") != "CustomLabel":
        errors.append("CRD names must be plural=customlabels kind=CustomLabel")

    versions = {v.get("name"): v for v in spec.get("versions") or [] if isinstance(v, dict)}
    v1 = versions.get("v1")
    if v1 is None:
        errors.append("CRD must serve version v1")
        return errors
    if "status" not in (v1.get("subresources") or {}):
        errors.append("CRD v1 must enable the status subresource")

    properties = (
        ((v1.get("schema") or {}).get("openAPIV3Schema") or {}).get("properties") or {}
    )
    custom_labels = ((properties.get("spec") or {}).get("properties") or {}).get("customLabels")
    if not isinstance(custom_labels, dict) or (custom_labels.get("additionalProperties") or {}).get(
        "type"
    ) != "string":
        errors.append("spec.customLabels must be a map of strings")

    status_properties = (properties.get("status") or {}).get("properties") or {}
    if "message" not in status_properties:
        errors.append("status.message must be declared")
    entry = (status_properties.get("perLabelStatus") or {}).get("additionalProperties") or {}
    entry_properties = entry.get("properties") or {}
    if (entry_properties.get("applied") or {}).get("type") != "boolean" or (
        entry_properties.get("value") or {}
    ).get("type") != "string":
        errors.append("status.perLabelStatus entries must declare applied:boolean and value:string")
    return errors


def validate_cluster_role(doc: dict[str, Any]) -> list[str]:
    granted: dict[tuple[str, str], set[str]] = {}
    for rule in doc.get("rules") or []:
        if not isinstance(rule, dict):
            continue
        verbs = {str(v) for v in rule.get("verbs") or []}
        for group in rule.get("apiGroups") or []:
            for resource in rule.get("resources") or []:
                granted.setdefault((str(group), str(resource)), set()).update(verbs)

    errors: list[str] = []
    for (group, resource), verbs in sorted(REQUIRED_RULES.items()):
        missing = verbs - granted.get((group, resource), set())
        if missing:
            label = f"{group}/{resource}" if group else resource
            errors.append(f"ClusterRole is missing {', '.join(sorted(missing))} on {label}")
    if any("delete" in verbs for (_, resource), verbs in granted.items() if resource == "namespaces"):
        errors.append("ClusterRole must not grant delete on namespaces")
    return errors


def validate_deployment(doc: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    spec = doc.get("spec") or {}
    if spec.get("replicas") != 1:
        errors.append("controller Deployment must run exactly one replica")

    pod_spec = (spec.get("template") or {}).get("spec") or {}
    if pod_spec.get("serviceAccountName") != CONTROLLER_NAME:
        errors.append(f"controller Deployment must use serviceAccountName {CONTROLLER_NAME}")

    containers = [c for c in pod_spec.get("containers") or [] if isinstance(c, dict)]
    if not containers:
        errors.append("controller Deployment must define a container")
        return errors
    container = containers[0]

    env_names = {e.get("name") for e in container.get("env") or [] if isinstance(e, dict)}
    for name in sorted(REQUIRED_ENV - env_names):
        errors.append(f"controller container must set {name}")

    for probe, path in PROBE_PATHS.items():
        actual = ((container.get(probe) or {}).get("httpGet") or {}).get("path")
        if actual != path:
            errors.append(f"controller {probe} must GET {path}")
    return errors


def validate_samples(docs: Iterable[dict[str, Any]]) -> list[str]:
    errors: list[str] = []
    for doc in docs:
        if _kind(doc) != "CustomLabel":
            continue
        name = _metadata_name(doc) or "<unnamed>"
        if doc.get("apiVersion") != f"{GROUP}/v1":
            errors.append(f"sample {name} must use apiVersion {GROUP}/v1")
        if not (doc.get("metadata") or {}).get("namespace"):
            errors.append(f"sample {name} must set metadata.namespace")
        labels = (doc.get("spec") or {}).get("customLabels") or {}
        if not isinstance(labels, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in labels.items()
        ):
            errors.append(f"sample {name} spec.customLabels values must be strings")
        if "status" in doc:
            errors.append(f"sample {name} must not carry status")
    return errors


def validate_config(docs: list[dict[str, Any]]) -> list[str]:
    errors: list[str] = []

    crd = _find_resource(docs, "CustomResourceDefinition", CRD_NAME)
    if crd is None:
        errors.append(f"missing CustomResourceDefinition {CRD_NAME}")
    else:
        errors.extend(validate_crd(crd))

    role = _find_resource(docs, "ClusterRole", CONTROLLER_NAME)
    if role is None:
        errors.append(f"missing ClusterRole {CONTROLLER_NAME}")
    else:
        errors.extend(validate_cluster_role(role))

    binding = _find_resource(docs, "ClusterRoleBinding", CONTROLLER_NAME)
    if binding is None:
        errors.append(f"missing ClusterRoleBinding {CONTROLLER_NAME}")
    elif (binding.get("roleRef") or {}).get("name") != CONTROLLER_NAME:
        errors.append(f"ClusterRoleBinding must reference ClusterRole {CONTROLLER_NAME}")

    deployment = _find_resource(docs, "Deployment", CONTROLLER_NAME)
    if deployment is None:
        errors.append(f"missing Deployment {CONTROLLER_NAME}")
    else:
        errors.extend(validate_deployment(deployment))

    errors.extend(validate_samples(docs))
    return errors


def main() -> int:
    args = _parse_args()
    config_dir: Path = args.config_dir
    if not config_dir.is_dir():
        print(f"config directory not found: {config_dir}", file=sys.stderr)
        return 1

    try:
        docs = load_documents(config_dir)
    except yaml.YAMLError as exc:
        print(f"failed to parse manifests: {exc}", file=sys.stderr)
        return 1

    errors = validate_config(docs)
    if errors:
        print("Manifest invariant validation failed:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    print(f"[config] {len(docs)} manifests passed invariant validation")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
