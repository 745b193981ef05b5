"""Branch → image tag convention.

| revision marker      | tag                |
|----------------------|--------------------|
| mutable branch head  | ``latest``         |
| feature branch       | ``feature-<name>`` |
| release candidate    | ``<date>-<seq>-rc``|
| release              | ``<date>-<seq>``   |
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime
from typing import Any, Literal, get_args

from image_provenance.framework.config import TaggingConfig

RevisionKind = Literal["head", "feature", "rc", "release"]
REVISION_KINDS: tuple[str, ...] = get_args(RevisionKind)

MUTABLE_KINDS: frozenset[str] = frozenset({"head", "feature"})
SEQUENCED_KINDS: frozenset[str] = frozenset({"rc", "release"})

HEAD_TAG = "latest"
FEATURE_TAG_PREFIX = "feature-"
RC_TAG_SUFFIX = "-rc"
MAX_TAG_LEN = 128

TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_INVALID_TAG_CHARS_RE = re.compile(r"[^a-z0-9_.-]+")
_SEQUENCED_TAG_RE = re.compile(r"^(?P<date>[A-Za-z0-9_.-]+?)-(?P<seq>\d+)(?P<rc>-rc)?$")


def parse_kind(value: Any) -> RevisionKind:
    if not isinstance(value, str) or value.strip().lower() not in REVISION_KINDS:
        raise ValueError(f"Unknown revision kind: {value!r} (expected one of {', '.join(REVISION_KINDS)})")
    return value.strip().lower()  # type: ignore[return-value]


def classify_branch(branch: str | None, tagging: TaggingConfig) -> RevisionKind:
    if branch is None:
        raise ValueError(
            "HEAD is detached; pass an explicit kind (head, feature, rc, release) to choose a tag"
        )
    if branch in tagging.default_branches:
        return "head"
    if any(branch.startswith(prefix) for prefix in tagging.feature_prefixes):
        return "feature"
    if any(branch.startswith(prefix) for prefix in tagging.release_prefixes):
        return "rc"
    return "feature"


def sanitize_tag_component(text: str) -> str:
    lowered = text.strip().lower()
    cleaned = _INVALID_TAG_CHARS_RE.sub("-", lowered)
    cleaned = re.sub(r"-{2,}", "-", cleaned)
    return cleaned.lstrip(".-").rstrip("-")


def feature_name(branch: str, prefixes: Sequence[str]) -> str:
    name = branch
    for prefix in sorted(prefixes, key=len, reverse=True):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    cleaned = sanitize_tag_component(name)
    if not cleaned:
        raise ValueError(f"Branch {branch!r} does not yield a usable feature name")
    return cleaned


def validate_tag(tag: str) -> str:
    if not TAG_RE.match(tag):
        raise ValueError(f"Invalid image tag: {tag!r}")
    return tag


def format_date(value: date | datetime, date_format: str) -> str:
    formatted = sanitize_tag_component(value.strftime(date_format))
    if not formatted:
        raise ValueError(f"tagging.date_format {date_format!r} produced an empty date component")
    return formatted


def derive_tag(
    kind: RevisionKind,
    *,
    branch: str | None = None,
    date_part: str | None = None,
    seq: int | None = None,
    tagging: TaggingConfig | None = None,
) -> str:
    tagging = tagging or TaggingConfig()

    if kind == "head":
        return HEAD_TAG

    if kind == "feature":
        if not branch:
            raise ValueError("A feature tag needs a branch name")
        name = feature_name(branch, tagging.feature_prefixes)
        tag = (FEATURE_TAG_PREFIX + name)[:MAX_TAG_LEN].rstrip(".-")
        return validate_tag(tag)

    if kind in SEQUENCED_KINDS:
        if not date_part:
            raise ValueError(f"A {kind} tag needs a date component")
        if seq is None or seq < 1:
            raise ValueError(f"A {kind} tag needs a sequence number >= 1 (got {seq!r})")
        tag = f"{date_part}-{seq}"
        if kind == "rc":
            tag += RC_TAG_SUFFIX
        return validate_tag(tag)

    raise ValueError(f"Unknown revision kind: {kind!r}")


def parse_sequenced_tag(tag: str) -> tuple[str, int, RevisionKind] | None:
    match = _SEQUENCED_TAG_RE.match(tag or "")
    if not match:
        return None
    kind: RevisionKind = "rc" if match.group("rc") else "release"
    return match.group("date"), int(match.group("seq")), kind


def next_sequence(entries: Iterable[Mapping[str, Any]], *, kind: RevisionKind, date_part: str) -> int:
    """1 + the highest sequence already used for (kind, date) in the build ledger."""

    highest = 0
    for entry in entries:
        if entry.get("kind") != kind:
            continue
        parsed = parse_sequenced_tag(str(entry.get("tag") or ""))
        if parsed is None:
            continue
        entry_date, entry_seq, entry_kind = parsed
        if entry_date == date_part and entry_kind == kind and entry_seq > highest:
            highest = entry_seq
    return highest + 1


def is_mutable_tag(kind: RevisionKind) -> bool:
    return kind in MUTABLE_KINDS
