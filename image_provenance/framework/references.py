from __future__ import annotations

import re
from dataclasses import dataclass

DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
_REPOSITORY_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class MutableReferenceError(ValueError):
    """Raised when an image is referenced by a tag where a content digest is required."""


def validate_digest(text: str) -> str:
    digest = (text or "").strip()
    if not DIGEST_RE.match(digest):
        raise ValueError(f"Invalid content digest: {text!r} (expected sha256:<64 hex chars>)")
    return digest


DOCKER_HUB_HOSTS: tuple[str, ...] = ("docker.io/", "index.docker.io/", "registry-1.docker.io/")
DOCKER_HUB_OFFICIAL_PREFIX = "library/"


def normalize_repository(repository: str) -> str:
    """Canonical short form of a repository name, as the docker CLI reports it.

    ``docker.io/library/python`` and ``python`` name the same Docker Hub repository.
    """

    name = repository.strip()
    for host in DOCKER_HUB_HOSTS:
        if name.startswith(host):
            name = name[len(host):]
            break
    if name.startswith(DOCKER_HUB_OFFICIAL_PREFIX) and name.count("/") == 1:
        name = name[len(DOCKER_HUB_OFFICIAL_PREFIX):]
    return name


def _validate_repository(repository: str) -> None:
    if not repository:
        raise ValueError("Image repository is empty")
    parts = repository.split("/")
    # The first component is a registry host when it looks like one.
    first = parts[0]
    path_parts = parts[1:] if len(parts) > 1 and ("." in first or ":" in first or first == "localhost") else parts
    if not path_parts:
        raise ValueError(f"Invalid image repository: {repository!r}")
    for part in path_parts:
        if not _REPOSITORY_COMPONENT_RE.match(part):
            raise ValueError(f"Invalid image repository: {repository!r}")


@dataclass(frozen=True)
class ImageReference:
    repository: str
    tag: str | None = None
    digest: str | None = None

    def __post_init__(self) -> None:
        _validate_repository(self.repository)
        if self.tag is not None and not _TAG_RE.match(self.tag):
            raise ValueError(f"Invalid image tag: {self.tag!r}")
        if self.digest is not None:
            validate_digest(self.digest)

    @property
    def is_immutable(self) -> bool:
        return self.digest is not None

    def pinned(self) -> str:
        """``repository@digest``; the form deployments must use."""

        if self.digest is None:
            raise MutableReferenceError(f"{self} has no content digest")
        return f"{self.repository}@{self.digest}"

    def tagged(self) -> str:
        return f"{self.repository}:{self.tag or 'latest'}"

    def __str__(self) -> str:
        text = self.repository
        if self.tag:
            text += f":{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text


def parse_image_reference(text: str) -> ImageReference:
    """Parse ``[registry[:port]/]path[:tag][@sha256:<hex>]``."""

    raw = (text or "").strip()
    if not raw:
        raise ValueError("Image reference is empty")

    digest = None
    if "@" in raw:
        raw, digest = raw.split("@", 1)
        digest = validate_digest(digest)

    tag = None
    last_slash = raw.rfind("/")
    last_colon = raw.rfind(":")
    # A colon after the last slash separates the tag; before it, it is a registry port.
    if last_colon > last_slash:
        raw, tag = raw[:last_colon], raw[last_colon + 1:]
        if not tag:
            raise ValueError(f"Invalid image reference: {text!r} (empty tag)")

    return ImageReference(repository=raw, tag=tag, digest=digest)


def require_immutable(ref: ImageReference | str) -> ImageReference:
    parsed = parse_image_reference(ref) if isinstance(ref, str) else ref
    if not parsed.is_immutable:
        raise MutableReferenceError(
            f"Image {parsed} is referenced by tag only; tags can be re-pointed, use {parsed.repository}@sha256:..."
        )
    return parsed
