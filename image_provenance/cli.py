from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from image_provenance.framework.tagging import REVISION_KINDS

# Failures the CLI reports as a one-line message instead of a traceback.
REPORTED_ERRORS: tuple[type[BaseException], ...] = (ValueError, RuntimeError, LookupError, OSError)


def _key_value(text: str) -> tuple[str, str]:
    if "=" not in text:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    key, value = text.split("=", 1)
    if not key.strip():
        raise argparse.ArgumentTypeError(f"empty key in {text!r}")
    return key.strip(), value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="image-provenance", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    def add_config(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default=None, help="Config file (default: provenance.yaml at the repo root)")

    build = sub.add_parser("build", help="Build an image labelled with the checked-out revision")
    add_config(build)
    build.add_argument("--kind", choices=REVISION_KINDS, default=None, help="Override the branch-derived kind")
    build.add_argument("--revision", default=None, help="Ref that must match the checked-out commit")
    build.add_argument("--http-proxy", default=None)
    build.add_argument("--https-proxy", default=None)
    build.add_argument("--no-proxy", default=None)
    build.add_argument("--build-arg", action="append", type=_key_value, default=[], metavar="KEY=VALUE")
    push = build.add_mutually_exclusive_group()
    push.add_argument("--push", dest="push", action="store_true", default=None)
    push.add_argument("--no-push", dest="push", action="store_false")

    deploy = sub.add_parser("deploy", help="Write a deployment descriptor pinned by content digest")
    add_config(deploy)
    selector = deploy.add_mutually_exclusive_group()
    selector.add_argument("--build-id", default=None)
    selector.add_argument("--tag", default=None)
    deploy.add_argument("--output", default=None, help="Manifest path (default: deploy.output_path)")
    deploy.add_argument("--apply", dest="apply", action="store_true", default=None)
    deploy.add_argument("--replicas", type=int, default=None)

    check = sub.add_parser("check", help="Check the Dockerfile and requirements for unpinned inputs")
    add_config(check)

    verify = sub.add_parser("verify", help="Verify manifests reference images by digest")
    verify.add_argument("manifests", nargs="+")

    tag = sub.add_parser("tag", help="Print the tag the current checkout would be built as")
    add_config(tag)
    tag.add_argument("--kind", choices=REVISION_KINDS, default=None)

    history = sub.add_parser("history", help="List recorded builds")
    add_config(history)
    history.add_argument("--branch", default=None)
    history.add_argument("--kind", choices=REVISION_KINDS, default=None)
    history.add_argument("--limit", type=int, default=20)

    return parser


def _cmd_build(args: argparse.Namespace) -> int:
    from image_provenance.app.build import run_build
    from image_provenance.foundation.config_io import load_config

    cfg_dict, cfg_meta = load_config(config_path=args.config)
    record = run_build(
        cfg_dict,
        kind=args.kind,
        revision_ref=args.revision,
        proxies={"http": args.http_proxy, "https": args.https_proxy, "no_proxy": args.no_proxy},
        push=args.push,
        extra_build_args=dict(args.build_arg),
        config_meta=cfg_meta,
    )
    print(f"{record.repository}:{record.tag} {record.image_id}")
    if record.image_ref:
        print(record.image_ref)
    return 0


def _cmd_deploy(args: argparse.Namespace) -> int:
    from image_provenance.app.deploy import run_deploy
    from image_provenance.foundation.config_io import load_config

    cfg_dict, cfg_meta = load_config(config_path=args.config)
    result = run_deploy(
        cfg_dict,
        build_id=args.build_id,
        tag=args.tag,
        output_path=args.output,
        apply=args.apply,
        replicas=args.replicas,
        config_meta=cfg_meta,
    )
    print(f"{result.record.manifest_path} {result.record.image}")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    from image_provenance.app._shared import parse_config, run_checks
    from image_provenance.foundation.config_io import load_config
    from image_provenance.framework.findings import has_errors

    cfg_dict, cfg_meta = load_config(config_path=args.config)
    cfg, warnings = parse_config(cfg_dict, cfg_meta)
    for warning in warnings:
        print(f"warning: {warning}", file=sys.stderr)
    findings = run_checks(cfg)
    for finding in findings:
        print(finding.format())
    if not findings:
        print("No reproducibility issues found.")
    return 1 if has_errors(findings) else 0


def _cmd_verify(args: argparse.Namespace) -> int:
    from image_provenance.framework.findings import has_errors
    from image_provenance.framework.kubernetes import verify_manifest

    findings = []
    for path in args.manifests:
        findings.extend(verify_manifest(path))
    for finding in findings:
        print(finding.format())
    if not findings:
        print("All images are pinned by digest.")
    return 1 if has_errors(findings) else 0


def _cmd_tag(args: argparse.Namespace) -> int:
    from image_provenance.app.build import describe_tag
    from image_provenance.foundation.config_io import load_config

    cfg_dict, cfg_meta = load_config(config_path=args.config)
    _revision, _kind, tag = describe_tag(cfg_dict, kind=args.kind, config_meta=cfg_meta)
    print(tag)
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    from image_provenance.app._shared import parse_config
    from image_provenance.app.history import format_history, load_history
    from image_provenance.foundation.config_io import load_config

    cfg_dict, cfg_meta = load_config(config_path=args.config)
    cfg, _warnings = parse_config(cfg_dict, cfg_meta)
    print(format_history(load_history(cfg.ledger_path), branch=args.branch, kind=args.kind, limit=args.limit))
    return 0


COMMANDS = {
    "build": _cmd_build,
    "deploy": _cmd_deploy,
    "check": _cmd_check,
    "verify": _cmd_verify,
    "tag": _cmd_tag,
    "history": _cmd_history,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    handler = COMMANDS.get(args.command)
    if handler is None:
        raise AssertionError(f"Unhandled command: {args.command}")

    from image_provenance.foundation.logging_utils import configure_stdio_utf8

    configure_stdio_utf8()
    try:
        return handler(args)
    except REPORTED_ERRORS as exc:
        print(f"image-provenance {args.command}: {exc.__class__.__name__}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
