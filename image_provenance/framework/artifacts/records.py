from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from image_provenance.foundation.commands import REDACTED, SECRET_ARG_NAMES

from .ledger import LEDGER_SCHEMA_VERSION

RECORD_SCHEMA_VERSION = 1


def redact_build_args(build_args: Mapping[str, str]) -> dict[str, str]:
    return {
        key: (REDACTED if key.lower() in SECRET_ARG_NAMES else value)
        for key, value in sorted(build_args.items())
    }


@dataclass
class BuildRecord:
    build_id: str
    created_at: str
    project: str
    repository: str

    revision: dict[str, Any] = field(default_factory=dict)
    kind: str | None = None
    tag: str | None = None
    tag_mutable: bool | None = None

    image_id: str | None = None
    repo_digest: str | None = None
    pushed: bool = False

    labels: dict[str, str] = field(default_factory=dict)
    build_args: dict[str, str] = field(default_factory=dict)
    dockerfile: str | None = None
    context: str | None = None
    findings: list[dict[str, Any]] = field(default_factory=list)
    artifacts: dict[str, str | None] = field(default_factory=dict)
    error: dict[str, Any] | None = None
    schema_version: int = RECORD_SCHEMA_VERSION

    @property
    def commit(self) -> str | None:
        value = self.revision.get("commit")
        return str(value) if value else None

    @property
    def image_ref(self) -> str | None:
        """The immutable reference deployments should use, once the image has a registry digest."""

        if not self.repo_digest:
            return None
        return f"{self.repository}@{self.repo_digest}"

    @property
    def status(self) -> str:
        return "error" if self.error is not None else "success"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["image_ref"] = self.image_ref
        payload["status"] = self.status
        return payload

    def ledger_entry(self) -> dict[str, Any]:
        return {
            "schema_version": LEDGER_SCHEMA_VERSION,
            "build_id": self.build_id,
            "created_at": self.created_at,
            "status": self.status,
            "project": self.project,
            "repository": self.repository,
            "commit": self.commit,
            "branch": self.revision.get("branch"),
            "dirty": self.revision.get("dirty"),
            "kind": self.kind,
            "tag": self.tag,
            "image_id": self.image_id,
            "repo_digest": self.repo_digest,
            "pushed": self.pushed,
            "record": self.artifacts.get("record"),
            "error": self.error,
        }


def record_path(records_dir: str, run_id: str, suffix: str) -> str:
    return os.path.join(records_dir, f"{run_id}_{suffix}.json")


def write_record(path: str, payload: Mapping[str, Any]) -> str:
    output_path = os.path.abspath(path)
    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as handle:
        json.dump(dict(payload), handle, ensure_ascii=False, indent=2)
        handle.write("\n")
    return output_path


def write_build_record(records_dir: str, record: BuildRecord) -> str:
    path = record_path(records_dir, record.build_id, "build")
    record.artifacts["record"] = path
    return write_record(path, record.to_dict())


@dataclass
class DeployRecord:
    deploy_id: str
    created_at: str
    build_id: str
    commit: str
    image: str
    tag: str | None
    manifest_path: str
    applied: bool = False
    apply_output: str | None = None
    error: dict[str, Any] | None = None
    schema_version: int = RECORD_SCHEMA_VERSION

    @property
    def status(self) -> str:
        return "error" if self.error is not None else "success"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status
        return payload

    def ledger_entry(self, record_file: str | None) -> dict[str, Any]:
        return {
            "schema_version": LEDGER_SCHEMA_VERSION,
            "deploy_id": self.deploy_id,
            "created_at": self.created_at,
            "status": self.status,
            "build_id": self.build_id,
            "commit": self.commit,
            "image": self.image,
            "manifest": self.manifest_path,
            "applied": self.applied,
            "record": record_file,
            "error": self.error,
        }
