"""Build an image from the checked-out revision and record it.

Builds are expected to run one at a time per ledger. The ``<date>-<seq>``
sequence is planned from a ledger read taken before the build starts, so two
concurrent ``rc``/``release`` builds can plan the same tag. The ledger is
re-checked before push and again under the ledger lock before the entry is
appended; the later build then fails with ``TagConflictError`` instead of
recording a second image under the same immutable tag. If both builds got past
the pre-push check, the registry tag has already moved; rebuild the loser.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from image_provenance.app._shared import log_config_meta, parse_config, run_checks
from image_provenance.foundation.commands import Runner, run_command
from image_provenance.foundation.logging_utils import close_logger, setup_operational_logger
from image_provenance.framework.artifacts import (
    BuildRecord,
    append_ledger_entry,
    check_tag_conflict,
    generate_unique_id,
    ledger_lock,
    read_ledger,
    redact_build_args,
    utc_now_iso8601,
    write_build_record,
)
from image_provenance.framework.config import ProvenanceConfig, ProxyConfig
from image_provenance.framework.docker import (
    CREATED_LABEL,
    DIRTY_LABEL,
    REVISION_LABEL,
    SOURCE_LABEL,
    BuildRequest,
    DockerClient,
    locate_docker,
)
from image_provenance.framework.findings import FindingsError, errors
from image_provenance.framework.git import SourceRevision, ensure_clean, resolve_revision
from image_provenance.framework.references import ImageReference
from image_provenance.framework.tagging import (
    SEQUENCED_KINDS,
    RevisionKind,
    classify_branch,
    derive_tag,
    format_date,
    is_mutable_tag,
    next_sequence,
    parse_kind,
)


def plan_tag(
    cfg: ProvenanceConfig,
    revision: SourceRevision,
    *,
    kind: str | None,
    ledger_entries: list[dict[str, Any]],
    now: datetime,
) -> tuple[RevisionKind, str]:
    """Pick the revision kind (explicit or from the branch) and derive its tag."""

    resolved_kind = parse_kind(kind) if kind else classify_branch(revision.branch, cfg.tagging)
    if resolved_kind in SEQUENCED_KINDS:
        date_part = format_date(now, cfg.tagging.date_format)
        seq = next_sequence(ledger_entries, kind=resolved_kind, date_part=date_part)
        return resolved_kind, derive_tag(resolved_kind, date_part=date_part, seq=seq, tagging=cfg.tagging)
    if resolved_kind == "feature" and revision.branch is None:
        raise ValueError("A feature tag needs a branch; HEAD is detached")
    return resolved_kind, derive_tag(resolved_kind, branch=revision.branch, tagging=cfg.tagging)


def merge_proxies(base: ProxyConfig, overrides: Mapping[str, str | None] | None) -> ProxyConfig:
    if not overrides:
        return base
    unknown = sorted(set(overrides) - {"http", "https", "no_proxy"})
    if unknown:
        raise ValueError(f"Unknown proxy settings: {unknown}")
    updates = {key: value for key, value in overrides.items() if value is not None}
    return replace(base, **updates)


def image_labels(cfg: ProvenanceConfig, revision: SourceRevision) -> dict[str, str]:
    # No per-build values here: identical sources must yield identical image metadata.
    labels = {
        REVISION_LABEL: revision.commit,
        SOURCE_LABEL: cfg.repository,
    }
    if revision.committed_at:
        labels[CREATED_LABEL] = revision.committed_at
    if revision.dirty:
        labels[DIRTY_LABEL] = "true"
    return labels


def run_build(
    cfg_dict: Mapping[str, Any],
    *,
    kind: str | None = None,
    revision_ref: str | None = None,
    proxies: Mapping[str, str | None] | None = None,
    push: bool | None = None,
    extra_build_args: Mapping[str, str] | None = None,
    config_meta: Mapping[str, Any] | None = None,
    build_id: str | None = None,
    runner: Runner | None = None,
    now: datetime | None = None,
) -> BuildRecord:
    cfg, cfg_warnings = parse_config(cfg_dict, config_meta)
    runner = runner or run_command

    build_id = build_id or generate_unique_id()
    logger, operational_log_path = setup_operational_logger(cfg.log_dir, build_id)
    log_config_meta(logger, config_meta, cfg_warnings)

    record = BuildRecord(
        build_id=build_id,
        created_at=utc_now_iso8601(),
        project=cfg.project_name,
        repository=cfg.repository,
        dockerfile=cfg.build.dockerfile,
        context=cfg.build.context,
        artifacts={"oplog": operational_log_path},
    )
    phase = "init"
    try:
        phase = "resolve_revision"
        revision = resolve_revision(cfg.source_dir, ref=revision_ref, runner=runner, logger=logger)
        record.revision = revision.to_dict()

        phase = "ensure_clean"
        ensure_clean(revision, allow_dirty=cfg.build.allow_dirty)
        if revision.dirty:
            logger.warning("Building from a dirty worktree at %s (build.allow_dirty=true)", revision.short)

        phase = "plan_tag"
        ledger_entries = read_ledger(cfg.ledger_path)
        resolved_kind, tag = plan_tag(
            cfg,
            revision,
            kind=kind,
            ledger_entries=ledger_entries,
            now=now or datetime.now(timezone.utc),
        )
        record.kind = resolved_kind
        record.tag = tag
        record.tag_mutable = is_mutable_tag(resolved_kind)
        logger.info("Tag for %s (%s): %s", revision.short, resolved_kind, tag)

        phase = "check"
        findings = run_checks(cfg)
        record.findings = [finding.to_dict() for finding in findings]
        for finding in findings:
            log = logger.error if finding.severity == "error" else logger.warning
            log("%s", finding.format())
        blocking = errors(findings)
        if blocking:
            raise FindingsError(
                f"{len(blocking)} reproducibility check(s) failed; fix them before building",
                blocking,
            )

        phase = "docker_build"
        proxy = merge_proxies(cfg.build.proxy, proxies)
        all_build_args = {**proxy.as_build_args(), **cfg.build.build_args, **dict(extra_build_args or {})}
        if cfg.build.revision_arg in all_build_args:
            raise ValueError(f"{cfg.build.revision_arg} is set from git and cannot be overridden")
        record.build_args = redact_build_args(all_build_args)

        image = ImageReference(cfg.repository, tag=tag)
        request = BuildRequest(
            dockerfile=cfg.build.dockerfile,
            context=cfg.build.context,
            image=image,
            revision_arg=cfg.build.revision_arg,
            commit=revision.commit,
            build_args=all_build_args,
            labels=image_labels(cfg, revision),
        )
        docker = DockerClient(
            locate_docker(cfg.build.docker_binary),
            runner=runner,
            timeout_s=cfg.build.timeout_s,
            logger=logger,
        )
        record.image_id = docker.build(request)

        phase = "verify_label"
        record.labels = docker.verify_revision_label(record.image_id, revision.commit)

        phase = "check_tag_conflict"
        # Re-read: another build may have recorded this tag since it was planned.
        check_tag_conflict(read_ledger(cfg.ledger_path), tag=tag, kind=resolved_kind, image_id=record.image_id)

        if cfg.build.push if push is None else push:
            phase = "push"
            docker.push(image)
            record.pushed = True

            phase = "resolve_digest"
            record.repo_digest = docker.resolve_repo_digest(image.tagged(), cfg.repository)
            logger.info("Deploy with %s", record.image_ref)
        else:
            logger.info("Push disabled; %s has no registry digest yet", image.tagged())

        phase = "write_record"
        record_file = write_build_record(cfg.records_dir, record)
        logger.info("Wrote build record to %s", record_file)

        phase = "append_ledger"
        with ledger_lock(cfg.ledger_path):
            check_tag_conflict(read_ledger(cfg.ledger_path), tag=tag, kind=resolved_kind, image_id=record.image_id)
            append_ledger_entry(cfg.ledger_path, record.ledger_entry(), lock=False)
        logger.info("Appended ledger entry to %s (status=%s)", cfg.ledger_path, record.status)

        logger.info("Operational log stored at %s", operational_log_path)
        logger.info("Build %s completed: %s -> %s", build_id, tag, record.image_id)
        return record
    except Exception as exc:
        logger.exception("Build failed during phase %s", phase)
        record.error = {
            "type": exc.__class__.__name__,
            "message": str(exc),
            "phase": phase,
        }
        try:
            record_file = write_build_record(cfg.records_dir, record)
            logger.info("Wrote build record to %s", record_file)
            append_ledger_entry(cfg.ledger_path, record.ledger_entry())
            logger.info("Appended ledger entry to %s (status=%s)", cfg.ledger_path, record.status)
        except Exception:
            logger.exception("Failed to write build record during error handling")
        raise
    finally:
        close_logger(logger)


def describe_tag(
    cfg_dict: Mapping[str, Any],
    *,
    kind: str | None = None,
    config_meta: Mapping[str, Any] | None = None,
    runner: Runner | None = None,
    now: datetime | None = None,
) -> tuple[SourceRevision, RevisionKind, str]:
    """Resolve the current checkout and the tag a build would get, without building."""

    cfg, _warnings = parse_config(cfg_dict, config_meta)
    runner = runner or run_command
    revision = resolve_revision(cfg.source_dir, runner=runner, logger=logging.getLogger(__name__))
    resolved_kind, tag = plan_tag(
        cfg,
        revision,
        kind=kind,
        ledger_entries=read_ledger(cfg.ledger_path),
        now=now or datetime.now(timezone.utc),
    )
    return revision, resolved_kind, tag
