"""Docker CLI integration: build with the revision embedded, push, resolve digests.

The build always receives the checked-out commit twice: as the configured build
argument (so the Dockerfile can use it) and as the OCI revision label. After the
build the label is read back from the image and compared against the commit.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from image_provenance.foundation.commands import CommandError, Runner, find_binary, redact_argv, run_command
from image_provenance.framework.git import RevisionMismatchError
from image_provenance.framework.references import DIGEST_RE, ImageReference, normalize_repository, validate_digest

REVISION_LABEL = "org.opencontainers.image.revision"
SOURCE_LABEL = "org.opencontainers.image.source"
CREATED_LABEL = "org.opencontainers.image.created"
DIRTY_LABEL = "io.image-provenance.dirty"

_log = logging.getLogger(__name__)


class DockerError(CommandError):
    """Raised when a docker command fails or returns unexpected output."""


@dataclass(frozen=True)
class BuildRequest:
    dockerfile: str
    context: str
    image: ImageReference
    revision_arg: str
    commit: str
    build_args: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)


def locate_docker(explicit_path: str | None = None) -> str:
    binary = find_binary(explicit_path, env_var="IMAGE_PROVENANCE_DOCKER", names=("docker", "docker.exe"))
    if not binary:
        raise FileNotFoundError(
            "docker was not found. Install the docker CLI and either "
            "(a) put it on PATH, (b) set IMAGE_PROVENANCE_DOCKER, or "
            "(c) set build.docker_binary in the config."
        )
    return binary


def build_labels(request: BuildRequest) -> dict[str, str]:
    labels = dict(request.labels)
    labels[REVISION_LABEL] = request.commit
    return labels


def build_args(request: BuildRequest) -> dict[str, str]:
    args = dict(request.build_args)
    args[request.revision_arg] = request.commit
    return args


def build_command(binary: str, request: BuildRequest, *, iidfile: str) -> list[str]:
    cmd: list[str] = [
        binary,
        "build",
        "--file",
        request.dockerfile,
        "--tag",
        request.image.tagged(),
        "--iidfile",
        iidfile,
    ]
    for key, value in sorted(build_args(request).items()):
        cmd.extend(["--build-arg", f"{key}={value}"])
    for key, value in sorted(build_labels(request).items()):
        cmd.extend(["--label", f"{key}={value}"])
    cmd.append(request.context)
    return cmd


class DockerClient:
    def __init__(
        self,
        binary: str = "docker",
        *,
        runner: Runner = run_command,
        timeout_s: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.binary = binary
        self.runner = runner
        self.timeout_s = timeout_s
        self.logger = logger or _log

    def _run(self, *args: str, timeout_s: float | None = None) -> str:
        cmd = [self.binary, *args]
        try:
            result = self.runner(cmd, timeout_s=timeout_s)
        except CommandError as exc:
            raise DockerError(
                f"docker {args[0]} failed: {exc}",
                cmd=exc.cmd,
                returncode=exc.returncode,
                stdout=exc.stdout,
                stderr=exc.stderr,
            ) from exc
        return result.stdout

    def build(self, request: BuildRequest) -> str:
        """Run the build and return the local image id (``sha256:...``)."""

        with tempfile.TemporaryDirectory(prefix="image-provenance-") as tmp_dir:
            iidfile = os.path.join(tmp_dir, "iid")
            cmd = build_command(self.binary, request, iidfile=iidfile)
            self.logger.info("Building %s from %s", request.image.tagged(), request.context)
            self.logger.debug("docker command: %s", " ".join(redact_argv(cmd)))
            try:
                self.runner(cmd, timeout_s=self.timeout_s)
            except CommandError as exc:
                raise DockerError(
                    f"docker build failed for {request.image.tagged()}: returncode={exc.returncode} "
                    f"stderr={exc.stderr!r}",
                    cmd=redact_argv(exc.cmd or cmd),
                    returncode=exc.returncode,
                    stdout=exc.stdout,
                    stderr=exc.stderr,
                ) from None

            if not os.path.exists(iidfile):
                raise DockerError("docker build did not write an image id file", cmd=redact_argv(cmd))
            with open(iidfile, "r", encoding="utf-8") as handle:
                raw_id = handle.read().strip()

        try:
            image_id = validate_digest(raw_id)
        except ValueError as exc:
            raise DockerError(f"docker build wrote an unexpected image id: {raw_id!r}") from exc
        self.logger.info("Built image %s", image_id)
        return image_id

    def inspect(self, image: str) -> dict[str, Any]:
        out = self._run("image", "inspect", "--format", "{{json .}}", image)
        try:
            payload = json.loads(out)
        except json.JSONDecodeError as exc:
            raise DockerError(f"docker image inspect returned invalid JSON for {image}") from exc
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        if not isinstance(payload, dict):
            raise DockerError(f"docker image inspect returned an unexpected payload for {image}")
        return payload

    def inspect_labels(self, image: str) -> dict[str, str]:
        config = self.inspect(image).get("Config") or {}
        labels = config.get("Labels") or {}
        return {str(k): str(v) for k, v in labels.items()}

    def verify_revision_label(self, image_id: str, commit: str) -> dict[str, str]:
        labels = self.inspect_labels(image_id)
        recorded = labels.get(REVISION_LABEL)
        if recorded != commit:
            raise RevisionMismatchError(
                f"Image {image_id} carries {REVISION_LABEL}={recorded!r} but was built from {commit}"
            )
        self.logger.info("Verified %s=%s on %s", REVISION_LABEL, commit, image_id)
        return labels

    def push(self, image: ImageReference) -> None:
        self.logger.info("Pushing %s", image.tagged())
        self._run("push", image.tagged(), timeout_s=self.timeout_s)

    def repo_digests(self, image: str) -> list[str]:
        return [str(item) for item in self.inspect(image).get("RepoDigests") or []]

    def resolve_repo_digest(self, image: str, repository: str) -> str:
        """Return the registry content digest of ``image`` within ``repository``."""

        wanted = normalize_repository(repository)
        for entry in self.repo_digests(image):
            name, _, digest = entry.partition("@")
            if normalize_repository(name) == wanted and DIGEST_RE.match(digest):
                self.logger.info("Resolved registry digest %s@%s", repository, digest)
                return digest
        raise DockerError(
            f"No registry digest for {image} in {repository}; was the image pushed?"
        )

