from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from image_provenance.app._shared import log_config_meta, parse_config
from image_provenance.foundation.commands import Runner, run_command
from image_provenance.foundation.logging_utils import close_logger, setup_operational_logger
from image_provenance.framework.artifacts import (
    DeployRecord,
    append_ledger_entry,
    find_build,
    generate_unique_id,
    read_ledger,
    record_path,
    utc_now_iso8601,
    write_record,
)
from image_provenance.framework.kubernetes import apply_manifest, render_deployment, write_manifest
from image_provenance.framework.references import ImageReference, MutableReferenceError


@dataclass(frozen=True)
class DeployResult:
    record: DeployRecord
    manifest: dict[str, Any]
    record_path: str


def select_build(
    entries: list[dict[str, Any]],
    *,
    build_id: str | None = None,
    tag: str | None = None,
) -> Mapping[str, Any]:
    entry = find_build(entries, build_id=build_id, tag=tag)
    if entry is None:
        if build_id:
            raise LookupError(f"No successful build with id {build_id!r} in the ledger")
        if tag:
            raise LookupError(f"No successful build tagged {tag!r} in the ledger")
        raise LookupError("The build ledger has no successful builds")
    return entry


def image_for_build(entry: Mapping[str, Any]) -> ImageReference:
    digest = entry.get("repo_digest")
    if not digest:
        raise MutableReferenceError(
            f"Build {entry.get('build_id')} ({entry.get('repository')}:{entry.get('tag')}) was never pushed, "
            "so it has no registry digest; rebuild with push enabled"
        )
    return ImageReference(str(entry["repository"]), tag=entry.get("tag") or None, digest=str(digest))


def run_deploy(
    cfg_dict: Mapping[str, Any],
    *,
    build_id: str | None = None,
    tag: str | None = None,
    output_path: str | None = None,
    apply: bool | None = None,
    replicas: int | None = None,
    config_meta: Mapping[str, Any] | None = None,
    deploy_id: str | None = None,
    runner: Runner | None = None,
) -> DeployResult:
    cfg, cfg_warnings = parse_config(cfg_dict, config_meta)
    runner = runner or run_command

    deploy_id = deploy_id or generate_unique_id()
    logger, operational_log_path = setup_operational_logger(cfg.log_dir, deploy_id)
    log_config_meta(logger, config_meta, cfg_warnings)

    record: DeployRecord | None = None
    phase = "select_build"
    try:
        entry = select_build(read_ledger(cfg.ledger_path), build_id=build_id, tag=tag)
        logger.info("Selected build %s (%s)", entry.get("build_id"), entry.get("tag"))

        phase = "resolve_image"
        image = image_for_build(entry)

        record = DeployRecord(
            deploy_id=deploy_id,
            created_at=utc_now_iso8601(),
            build_id=str(entry.get("build_id")),
            commit=str(entry.get("commit")),
            image=image.pinned(),
            tag=image.tag,
            manifest_path=output_path or cfg.deploy.output_path,
        )

        phase = "render"
        manifest = render_deployment(
            image,
            deploy_cfg=cfg.deploy,
            revision=record.commit,
            build_id=record.build_id,
            tag=image.tag,
            replicas=replicas,
        )
        record.manifest_path = write_manifest(record.manifest_path, manifest)
        logger.info("Wrote deployment descriptor to %s (image=%s)", record.manifest_path, record.image)

        if cfg.deploy.apply if apply is None else apply:
            phase = "apply"
            record.apply_output = apply_manifest(
                record.manifest_path,
                kubectl_binary=cfg.deploy.kubectl_binary,
                context=cfg.deploy.kube_context,
                namespace=cfg.deploy.namespace,
                runner=runner,
                logger=logger,
            )
            record.applied = True

        phase = "write_record"
        deploy_record_path = write_record(record_path(cfg.records_dir, deploy_id, "deploy"), record.to_dict())
        append_ledger_entry(cfg.deploy_ledger_path, record.ledger_entry(deploy_record_path))
        logger.info("Wrote deploy record to %s", deploy_record_path)
        return DeployResult(record=record, manifest=manifest, record_path=deploy_record_path)
    except Exception as exc:
        logger.exception("Deploy failed during phase %s", phase)
        if record is not None:
            record.error = {"type": exc.__class__.__name__, "message": str(exc), "phase": phase}
            try:
                failed_path = write_record(record_path(cfg.records_dir, deploy_id, "deploy"), record.to_dict())
                append_ledger_entry(cfg.deploy_ledger_path, record.ledger_entry(failed_path))
            except Exception:
                logger.exception("Failed to write deploy record during error handling")
        raise
    finally:
        close_logger(logger)
