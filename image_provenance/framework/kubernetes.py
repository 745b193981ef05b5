"""Deployment descriptors that pin images by content digest."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from typing import Any

import yaml

from image_provenance.foundation.commands import CommandError, Runner, find_binary, run_command
from image_provenance.framework.config import DeployConfig
from image_provenance.framework.findings import Finding
from image_provenance.framework.references import ImageReference, parse_image_reference, require_immutable

ANNOTATION_PREFIX = "image-provenance/"
CONTAINER_KEYS: tuple[str, ...] = ("initContainers", "containers", "ephemeralContainers")

_log = logging.getLogger(__name__)


class KubectlError(CommandError):
    """Raised when kubectl fails."""


def render_deployment(
    image: ImageReference,
    *,
    deploy_cfg: DeployConfig,
    revision: str,
    build_id: str,
    tag: str | None = None,
    replicas: int | None = None,
) -> dict[str, Any]:
    """Build an ``apps/v1`` Deployment whose container image is ``repository@sha256:...``.

    The tag, if any, is kept only as an informational annotation.
    """

    pinned = require_immutable(image)

    match_labels = {"app.kubernetes.io/name": deploy_cfg.name}
    pod_labels = {**deploy_cfg.labels, **match_labels}

    annotations = {
        f"{ANNOTATION_PREFIX}revision": revision,
        f"{ANNOTATION_PREFIX}build-id": build_id,
        f"{ANNOTATION_PREFIX}digest": str(pinned.digest),
    }
    if tag:
        annotations[f"{ANNOTATION_PREFIX}tag"] = tag

    container: dict[str, Any] = {
        "name": deploy_cfg.container_name,
        "image": pinned.pinned(),
        "imagePullPolicy": "IfNotPresent",
    }
    if deploy_cfg.port is not None:
        container["ports"] = [{"containerPort": deploy_cfg.port}]

    effective_replicas = deploy_cfg.replicas if replicas is None else replicas
    if effective_replicas < 0:
        raise ValueError(f"replicas must be >= 0 (got {effective_replicas})")

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": deploy_cfg.name,
            "namespace": deploy_cfg.namespace,
            "labels": dict(pod_labels),
            "annotations": dict(annotations),
        },
        "spec": {
            "replicas": effective_replicas,
            "selector": {"matchLabels": match_labels},
            "template": {
                "metadata": {"labels": dict(pod_labels), "annotations": dict(annotations)},
                "spec": {"containers": [container]},
            },
        },
    }


def dump_manifest(manifest: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(manifest), sort_keys=False, default_flow_style=False)


def write_manifest(path: str, manifest: Mapping[str, Any]) -> str:
    output_path = os.path.abspath(path)
    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as handle:
        handle.write(dump_manifest(manifest))
    return output_path


def _pod_specs(document: Mapping[str, Any]) -> Iterator[tuple[str, Mapping[str, Any]]]:
    kind = str(document.get("kind") or "")
    spec = document.get("spec")
    if not isinstance(spec, Mapping):
        return
    if kind == "Pod":
        yield kind, spec
        return
    if kind == "CronJob":
        job_template = spec.get("jobTemplate")
        spec = job_template.get("spec") if isinstance(job_template, Mapping) else None
        if not isinstance(spec, Mapping):
            return
    template = spec.get("template")
    if isinstance(template, Mapping) and isinstance(template.get("spec"), Mapping):
        yield kind, template["spec"]


def iter_images(document: Mapping[str, Any]) -> Iterator[tuple[str, str, str]]:
    """Yield ``(kind, container_name, image)`` for every container in a manifest document."""

    if document.get("kind") == "List" and isinstance(document.get("items"), list):
        for item in document["items"]:
            if isinstance(item, Mapping):
                yield from iter_images(item)
        return

    for kind, pod_spec in _pod_specs(document):
        for key in CONTAINER_KEYS:
            containers = pod_spec.get(key)
            if not isinstance(containers, list):
                continue
            for container in containers:
                if isinstance(container, Mapping):
                    yield kind, str(container.get("name") or "?"), str(container.get("image") or "")


def verify_manifest(path: str) -> list[Finding]:
    """Flag every container image that is not addressed by a content digest."""

    with open(path, "r", encoding="utf-8") as handle:
        try:
            documents = [doc for doc in yaml.safe_load_all(handle) if doc is not None]
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    findings: list[Finding] = []
    for document in documents:
        if not isinstance(document, Mapping):
            continue
        metadata = document.get("metadata")
        name = metadata.get("name") if isinstance(metadata, Mapping) else None
        for kind, container_name, image in iter_images(document):
            where = f"{kind}/{name or '?'} container {container_name}"
            if not image:
                findings.append(Finding("error", path, None, f"{where} has no image"))
                continue
            try:
                ref = parse_image_reference(image)
            except ValueError as exc:
                findings.append(Finding("error", path, None, f"{where}: {exc}"))
                continue
            if not ref.is_immutable:
                findings.append(
                    Finding("error", path, None, f"{where} uses mutable reference {image!r}; pin it with @sha256:<digest>")
                )
    return findings


def apply_manifest(
    path: str,
    *,
    kubectl_binary: str | None = None,
    context: str | None = None,
    namespace: str | None = None,
    runner: Runner = run_command,
    logger: logging.Logger | None = None,
) -> str:
    log = logger or _log
    binary = find_binary(kubectl_binary, env_var="IMAGE_PROVENANCE_KUBECTL", names=("kubectl", "kubectl.exe"))
    if not binary:
        raise FileNotFoundError(
            "kubectl was not found. Put it on PATH, set IMAGE_PROVENANCE_KUBECTL, or set deploy.kubectl_binary."
        )

    cmd = [binary]
    if context:
        cmd.extend(["--context", context])
    if namespace:
        cmd.extend(["--namespace", namespace])
    cmd.extend(["apply", "-f", path])

    log.info("Applying %s", path)
    try:
        result = runner(cmd)
    except CommandError as exc:
        raise KubectlError(
            f"kubectl apply failed for {path}: {exc}",
            cmd=exc.cmd,
            returncode=exc.returncode,
            stdout=exc.stdout,
            stderr=exc.stderr,
        ) from exc
    output = result.stdout.strip()
    if output:
        log.info("kubectl: %s", output)
    return output
