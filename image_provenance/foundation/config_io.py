"""Locate and read ``provenance.yaml`` (plus an optional uncommitted ``provenance.local.yaml``)."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "IMAGE_PROVENANCE_CONFIG"
CONFIG_FILE = "provenance.yaml"
LOCAL_CONFIG_FILE = "provenance.local.yaml"
ROOT_MARKERS: tuple[str, ...] = (CONFIG_FILE, ".git", "pyproject.toml")


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    here = Path(start or os.getcwd()).resolve()
    if here.is_file():
        here = here.parent

    for directory in (here, *here.parents):
        if any((directory / marker).exists() for marker in ROOT_MARKERS):
            return str(directory)

    raise FileNotFoundError(f"No {' / '.join(ROOT_MARKERS)} found in {here} or any parent directory")


def _check_keys(node: Any, path: str, source: str) -> None:
    if not isinstance(node, Mapping):
        return
    for key, value in node.items():
        if not isinstance(key, str):
            where = f"{path}.{key}" if path else str(key)
            raise ValueError(f"Config keys must be strings; got {type(key).__name__} key {where!r} in {source}")
        _check_keys(value, f"{path}.{key}" if path else key, source)


def read_config_file(path: str) -> dict[str, Any]:
    """Parse one YAML config file; the document must be a mapping with string keys."""

    with open(path, "r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file must contain a YAML mapping, not {type(payload).__name__}: {path}")
    _check_keys(payload, "", path)
    return dict(payload)


def overlay_config(base: Any, overlay: Any, *, path: str = "") -> tuple[Any, list[str]]:
    """
    Apply a local overlay on top of the base config.

    Mappings merge key by key; any other value (lists included) replaces the
    base value, and ``null`` resets it. Returns ``(merged, overridden)`` where
    ``overridden`` lists the dotted key paths the overlay set.
    """

    if isinstance(base, Mapping) and isinstance(overlay, Mapping):
        merged: dict[str, Any] = dict(base)
        overridden: list[str] = []
        for key, value in overlay.items():
            key_path = f"{path}.{key}" if path else str(key)
            if key in base and base[key] is not None and value is not None:
                merged[key], nested = overlay_config(base[key], value, path=key_path)
                overridden.extend(nested)
            else:
                merged[key] = value
                overridden.append(key_path)
        return merged, overridden

    if base is not None and overlay is not None:
        base_is_mapping = isinstance(base, Mapping)
        overlay_is_mapping = isinstance(overlay, Mapping)
        base_is_list = isinstance(base, (list, tuple))
        overlay_is_list = isinstance(overlay, (list, tuple))
        if base_is_mapping != overlay_is_mapping or base_is_list != overlay_is_list:
            raise ValueError(
                f"Invalid config overlay merge at {path or '<root>'}: "
                f"cannot replace {type(base).__name__} with {type(overlay).__name__}"
            )

    if isinstance(overlay, tuple):
        overlay = list(overlay)
    return overlay, [path] if path else []


def load_config(
    *,
    config_path: str | os.PathLike[str] | None = None,
    env_var: str | None = CONFIG_ENV_VAR,
    config_dir: str | os.PathLike[str] | None = None,
    start_dir: str | os.PathLike[str] | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load the provenance config as ``(cfg, meta)``.

    ``config_path`` (or else ``$IMAGE_PROVENANCE_CONFIG``) names a single file
    that is used as-is. Without one, ``provenance.yaml`` is read from
    ``config_dir`` (absolute, or relative to the repo root; default the repo
    root itself) and ``provenance.local.yaml`` next to it is overlaid when present.

    ``meta`` records how the config was found: ``mode`` (explicit, env, base or
    base+local), the ``paths`` read, the ``repo_root`` and the ``overrides``
    the local file applied.
    """

    single = str(config_path).strip() if config_path is not None else ""
    mode = "explicit"
    if not single and config_path is None and env_var:
        single = os.environ.get(env_var, "").strip()
        mode = "env"

    if single:
        resolved = os.path.abspath(os.path.expandvars(os.path.expanduser(single)))
        meta = {"mode": mode, "paths": [resolved], "env_var": env_var, "repo_root": None, "overrides": []}
        return read_config_file(resolved), meta

    repo_root = None
    if config_dir is not None and os.path.isabs(config_dir):
        directory = str(config_dir)
    else:
        repo_root = find_repo_root(start_dir)
        directory = os.path.join(repo_root, str(config_dir or "."))

    base_path = os.path.abspath(os.path.join(directory, CONFIG_FILE))
    local_path = os.path.abspath(os.path.join(directory, LOCAL_CONFIG_FILE))
    if not os.path.isfile(base_path):
        raise FileNotFoundError(f"Missing base config file: {base_path}")

    cfg = read_config_file(base_path)
    meta: dict[str, Any] = {
        "mode": "base",
        "paths": [base_path],
        "env_var": env_var,
        "repo_root": repo_root,
        "overrides": [],
    }
    if os.path.isfile(local_path):
        cfg, overridden = overlay_config(cfg, read_config_file(local_path))
        meta.update(mode="base+local", overrides=overridden)
        meta["paths"].append(local_path)
    return cfg, meta
