from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

from image_provenance.foundation.config_io import find_repo_root

DEFAULT_REVISION_ARG = "VCS_REF"
DEFAULT_BUILD_TIMEOUT_S = 60 * 60


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts:
      - True/False
      - 0/1 (ints)
      - strings: true/false/1/0/yes/no (case-insensitive, surrounding whitespace ignored)

    Raises:
      ValueError for anything else, with the provided config key path.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be an int")
        try:
            return int(value.strip())
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


@dataclass(frozen=True)
class ProxyConfig:
    http: str | None = None
    https: str | None = None
    no_proxy: str | None = None

    def as_build_args(self) -> dict[str, str]:
        """Docker's predefined proxy ARGs; both spellings are set so any base image sees them."""

        args: dict[str, str] = {}
        if self.http:
            args["http_proxy"] = self.http
            args["HTTP_PROXY"] = self.http
        if self.https:
            args["https_proxy"] = self.https
            args["HTTPS_PROXY"] = self.https
        if self.no_proxy:
            args["no_proxy"] = self.no_proxy
            args["NO_PROXY"] = self.no_proxy
        return args


@dataclass(frozen=True)
class BuildConfig:
    context: str
    dockerfile: str
    requirements: str | None
    revision_arg: str
    build_args: Mapping[str, str]
    proxy: ProxyConfig
    allow_dirty: bool
    push: bool
    docker_binary: str | None
    timeout_s: int


@dataclass(frozen=True)
class TaggingConfig:
    default_branches: tuple[str, ...] = ("main", "master")
    feature_prefixes: tuple[str, ...] = ("feature/",)
    release_prefixes: tuple[str, ...] = ("release/",)
    date_format: str = "%Y%m%d"


@dataclass(frozen=True)
class DeployConfig:
    name: str
    namespace: str
    replicas: int
    container_name: str
    port: int | None
    labels: Mapping[str, str]
    output_path: str
    apply: bool
    kubectl_binary: str | None
    kube_context: str | None


@dataclass(frozen=True)
class ProvenanceConfig:
    project_name: str
    repository: str
    source_dir: str

    build: BuildConfig
    tagging: TaggingConfig
    deploy: DeployConfig

    records_dir: str
    log_dir: str

    strict: bool = False

    @property
    def ledger_path(self) -> str:
        return os.path.join(self.records_dir, "builds_index.jsonl")

    @property
    def deploy_ledger_path(self) -> str:
        return os.path.join(self.records_dir, "deploys_index.jsonl")

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any],
        *,
        base_dir: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> tuple["ProvenanceConfig", list[str]]:
        """
        Parse and validate configuration, returning (ProvenanceConfig, warnings).

        Relative paths resolve against ``base_dir`` (default: the repo root).
        Proxy settings fall back to ``environ`` (default: ``os.environ``).

        Raises:
            ValueError: if required keys are missing or invalid.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        environ = os.environ if environ is None else environ
        warnings: list[str] = []

        strict_unknown_keys = False
        if "strict" in cfg:
            strict_unknown_keys = parse_bool(cfg.get("strict"), "strict")

        ANY: object = object()

        schema: Mapping[str, Any] = {
            "strict": None,
            "project": {"name": None, "repository": None},
            "build": {
                "context": None,
                "dockerfile": None,
                "requirements": None,
                "revision_arg": None,
                "build_args": ANY,
                "proxy": {"http": None, "https": None, "no_proxy": None},
                "allow_dirty": None,
                "push": None,
                "docker_binary": None,
                "timeout_s": None,
            },
            "tagging": {
                "default_branches": None,
                "feature_prefixes": None,
                "release_prefixes": None,
                "date_format": None,
            },
            "deploy": {
                "name": None,
                "namespace": None,
                "replicas": None,
                "container_name": None,
                "port": None,
                "labels": ANY,
                "output_path": None,
                "apply": None,
                "kubectl_binary": None,
                "kube_context": None,
            },
            "records": {"path": None, "log_path": None},
        }

        def collect_unknown_keys(mapping: Any, subschema: Mapping[str, Any], *, prefix: str) -> list[str]:
            if not isinstance(mapping, Mapping):
                return []
            unknown: list[str] = []
            for key, value in mapping.items():
                if not isinstance(key, str):
                    continue
                dotted = f"{prefix}.{key}" if prefix else key
                if key not in subschema:
                    unknown.append(dotted)
                    continue
                child = subschema.get(key)
                if child is ANY:
                    continue
                if isinstance(child, Mapping):
                    unknown.extend(collect_unknown_keys(value, child, prefix=dotted))
            return unknown

        unknown_keys = sorted(set(collect_unknown_keys(cfg, schema, prefix="")))
        if unknown_keys:
            if strict_unknown_keys:
                raise ValueError("Unknown config keys: " + ", ".join(unknown_keys))
            warnings.extend(f"Unknown config key: {key}" for key in unknown_keys)

        root_dir = base_dir

        def normalize_path(value: str) -> str:
            nonlocal root_dir
            expanded = os.path.expandvars(os.path.expanduser(value.strip()))
            if not os.path.isabs(expanded):
                if root_dir is None:
                    root_dir = find_repo_root()
                expanded = os.path.join(root_dir, expanded)
            return os.path.abspath(expanded)

        def lookup(path: str) -> tuple[bool, Any]:
            cur: Any = cfg
            for part in path.split("."):
                if not isinstance(cur, Mapping) or part not in cur:
                    return False, None
                cur = cur[part]
            return True, cur

        def require_str(path: str) -> str:
            found, value = lookup(path)
            if not found or value is None:
                raise ValueError(f"Missing required config: {path}")
            if not isinstance(value, str):
                raise ValueError(f"Invalid config type for {path}: expected string")
            if not value.strip():
                raise ValueError(f"Missing required config: {path}")
            return value.strip()

        def optional_str(path: str, default: str | None = None) -> str | None:
            found, value = lookup(path)
            if not found or value is None:
                return default
            if not isinstance(value, str):
                raise ValueError(f"Invalid config type for {path}: expected string")
            if not value.strip():
                return default
            return value.strip()

        def optional_int(path: str, default: int | None = None) -> int | None:
            found, value = lookup(path)
            if not found or value is None:
                return default
            if isinstance(value, str) and not value.strip():
                return default
            return parse_int(value, path)

        def optional_bool(path: str, *, default: bool) -> bool:
            found, value = lookup(path)
            if not found:
                return default
            if value is None:
                raise ValueError(f"Invalid boolean for {path}: None")
            return parse_bool(value, path)

        def str_tuple(path: str, default: tuple[str, ...]) -> tuple[str, ...]:
            found, value = lookup(path)
            if not found or value is None:
                return default
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, (list, tuple)):
                raise ValueError(f"Invalid config type for {path}: expected list of strings")
            items: list[str] = []
            for idx, item in enumerate(value):
                if not isinstance(item, str) or not item.strip():
                    raise ValueError(f"Invalid config value for {path}[{idx}]: expected non-empty string")
                items.append(item.strip())
            return tuple(items)

        def str_mapping(path: str) -> dict[str, str]:
            found, value = lookup(path)
            if not found or value is None:
                return {}
            if not isinstance(value, Mapping):
                raise ValueError(f"Invalid config type for {path}: expected mapping")
            out: dict[str, str] = {}
            for key, item in value.items():
                if not isinstance(key, str) or not key.strip():
                    raise ValueError(f"Invalid config key under {path}: {key!r}")
                if item is None or isinstance(item, (Mapping, list, tuple)):
                    raise ValueError(f"Invalid config value for {path}.{key}: expected scalar")
                if isinstance(item, bool):
                    item = "true" if item else "false"
                out[key.strip()] = str(item)
            return out

        project_name = require_str("project.name")
        repository = require_str("project.repository")
        if "@" in repository or repository.rsplit("/", 1)[-1].count(":"):
            raise ValueError(
                f"Invalid config value for project.repository: {repository!r} (must not include a tag or digest)"
            )

        source_dir = normalize_path(".")

        revision_arg = optional_str("build.revision_arg", DEFAULT_REVISION_ARG) or DEFAULT_REVISION_ARG
        if not revision_arg.replace("_", "").isalnum():
            raise ValueError(f"Invalid config value for build.revision_arg: {revision_arg!r}")

        proxy = ProxyConfig(
            http=optional_str("build.proxy.http") or environ.get("HTTP_PROXY") or environ.get("http_proxy"),
            https=optional_str("build.proxy.https") or environ.get("HTTPS_PROXY") or environ.get("https_proxy"),
            no_proxy=optional_str("build.proxy.no_proxy") or environ.get("NO_PROXY") or environ.get("no_proxy"),
        )

        build_args = str_mapping("build.build_args")
        if revision_arg in build_args:
            raise ValueError(
                f"build.build_args must not set {revision_arg}; the revision is always taken from git"
            )

        requirements_raw = optional_str("build.requirements")
        timeout_s = optional_int("build.timeout_s", DEFAULT_BUILD_TIMEOUT_S)
        if timeout_s is None or timeout_s <= 0:
            raise ValueError("Invalid config value for build.timeout_s: must be > 0")

        build = BuildConfig(
            context=normalize_path(optional_str("build.context", ".") or "."),
            dockerfile=normalize_path(optional_str("build.dockerfile", "Dockerfile") or "Dockerfile"),
            requirements=normalize_path(requirements_raw) if requirements_raw else None,
            revision_arg=revision_arg,
            build_args=build_args,
            proxy=proxy,
            allow_dirty=optional_bool("build.allow_dirty", default=False),
            push=optional_bool("build.push", default=False),
            docker_binary=optional_str("build.docker_binary"),
            timeout_s=timeout_s,
        )

        tagging_defaults = TaggingConfig()
        tagging = TaggingConfig(
            default_branches=str_tuple("tagging.default_branches", tagging_defaults.default_branches),
            feature_prefixes=str_tuple("tagging.feature_prefixes", tagging_defaults.feature_prefixes),
            release_prefixes=str_tuple("tagging.release_prefixes", tagging_defaults.release_prefixes),
            date_format=optional_str("tagging.date_format", tagging_defaults.date_format)
            or tagging_defaults.date_format,
        )

        deploy_name = optional_str("deploy.name", project_name) or project_name
        replicas = optional_int("deploy.replicas", 1)
        if replicas is None or replicas < 0:
            raise ValueError("Invalid config value for deploy.replicas: must be >= 0")
        port = optional_int("deploy.port")
        if port is not None and not (0 < port < 65536):
            raise ValueError(f"Invalid config value for deploy.port: {port}")

        deploy = DeployConfig(
            name=deploy_name,
            namespace=optional_str("deploy.namespace", "default") or "default",
            replicas=replicas,
            container_name=optional_str("deploy.container_name", "app") or "app",
            port=port,
            labels=str_mapping("deploy.labels"),
            output_path=normalize_path(
                optional_str("deploy.output_path") or os.path.join("deploy", f"{deploy_name}.yaml")
            ),
            apply=optional_bool("deploy.apply", default=False),
            kubectl_binary=optional_str("deploy.kubectl_binary"),
            kube_context=optional_str("deploy.kube_context"),
        )

        records_dir = normalize_path(optional_str("records.path", ".provenance") or ".provenance")
        log_path_raw = optional_str("records.log_path")
        log_dir = normalize_path(log_path_raw) if log_path_raw else os.path.join(records_dir, "logs")

        return (
            ProvenanceConfig(
                project_name=project_name,
                repository=repository,
                source_dir=source_dir,
                build=build,
                tagging=tagging,
                deploy=deploy,
                records_dir=records_dir,
                log_dir=log_dir,
                strict=strict_unknown_keys,
            ),
            warnings,
        )
