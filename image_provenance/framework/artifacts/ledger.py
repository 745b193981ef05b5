from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from image_provenance.framework.tagging import MUTABLE_KINDS

LEDGER_SCHEMA_VERSION = 1


class TagConflictError(ValueError):
    """Raised when an immutable tag would be re-pointed at a different image."""


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def generate_unique_id() -> str:
    unique_id = uuid.uuid4()
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{unique_id}"


@contextmanager
def ledger_lock(
    ledger_path: str,
    *,
    timeout_seconds: float = 60.0,
    poll_interval_seconds: float = 0.1,
):
    lock_path = f"{ledger_path}.lock"
    start = time.monotonic()
    os.makedirs(os.path.dirname(os.path.abspath(lock_path)), exist_ok=True)

    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                file.write(f"pid={os.getpid()}\ncreated_at={utc_now_iso8601()}\n")
            break
        except FileExistsError:
            if (time.monotonic() - start) >= timeout_seconds:
                raise TimeoutError(f"Timed out waiting for ledger lock: {lock_path}")
            time.sleep(poll_interval_seconds)

    try:
        yield
    finally:
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass


def read_ledger(path: str) -> list[dict[str, Any]]:
    if not os.path.exists(path):
        return []

    entries: list[dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Corrupt ledger line {lineno} in {path}: {exc}") from exc
            if not isinstance(entry, dict):
                raise ValueError(f"Corrupt ledger line {lineno} in {path}: expected a JSON object")
            entries.append(entry)
    return entries


def append_ledger_entry(path: str, entry: Mapping[str, Any], *, lock: bool = True) -> None:
    """
    Append a single JSON object to a JSONL ledger.

    The caller is responsible for building a schema_versioned entry object.
    """

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    line = json.dumps(dict(entry), ensure_ascii=False) + "\n"
    if not lock:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line)
        return
    with ledger_lock(path):
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line)


def successful(entries: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    return [entry for entry in entries if entry.get("status") == "success"]


def find_build(
    entries: Iterable[Mapping[str, Any]],
    *,
    build_id: str | None = None,
    tag: str | None = None,
) -> Mapping[str, Any] | None:
    """Latest successful entry matching ``build_id`` or ``tag`` (or simply the latest)."""

    for entry in reversed(successful(entries)):
        if build_id is not None and entry.get("build_id") != build_id:
            continue
        if tag is not None and entry.get("tag") != tag:
            continue
        return entry
    return None


def check_tag_conflict(entries: Iterable[Mapping[str, Any]], *, tag: str, kind: str, image_id: str) -> None:
    if kind in MUTABLE_KINDS:
        return
    for entry in successful(entries):
        if entry.get("tag") != tag:
            continue
        previous = entry.get("image_id")
        if previous and previous != image_id:
            raise TagConflictError(
                f"Tag {tag!r} already names image {previous} (build {entry.get('build_id')}); "
                f"refusing to re-point it at {image_id}"
            )
