from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from image_provenance.framework.config import ProvenanceConfig
from image_provenance.framework.dockerfile import check_dockerfile, check_requirements
from image_provenance.framework.findings import Finding


def config_base_dir(config_meta: Mapping[str, Any] | None) -> str | None:
    """Directory that relative config paths resolve against."""

    if not config_meta:
        return None
    repo_root = config_meta.get("repo_root")
    if repo_root:
        return str(repo_root)
    paths = config_meta.get("paths") or []
    if paths:
        return os.path.dirname(os.path.abspath(str(paths[0])))
    return None


def parse_config(
    cfg_dict: Mapping[str, Any],
    config_meta: Mapping[str, Any] | None = None,
) -> tuple[ProvenanceConfig, list[str]]:
    return ProvenanceConfig.from_dict(cfg_dict, base_dir=config_base_dir(config_meta))


def log_config_meta(logger: logging.Logger, config_meta: Mapping[str, Any] | None, warnings: list[str]) -> None:
    if config_meta:
        mode = config_meta.get("mode")
        paths = config_meta.get("paths") or []
        env_var = config_meta.get("env_var") or "IMAGE_PROVENANCE_CONFIG"
        if mode in {"env", "explicit"} and paths:
            label = f"env {env_var}" if mode == "env" else "explicit path"
            logger.info("Loaded config from %s=%s", label, paths[0])
        elif paths:
            base = paths[0]
            local = paths[1] if len(paths) > 1 else None
            if local:
                logger.info("Loaded config base=%s local=%s", base, local)
            else:
                logger.info("Loaded config base=%s", base)
        overrides = config_meta.get("overrides") or []
        if overrides:
            logger.info("Local overrides: %s", ", ".join(overrides))
    for warning in warnings:
        logger.warning(warning)


def run_checks(cfg: ProvenanceConfig) -> list[Finding]:
    findings = check_dockerfile(cfg.build.dockerfile, revision_arg=cfg.build.revision_arg)
    if cfg.build.requirements:
        findings.extend(check_requirements(cfg.build.requirements))
    return findings
