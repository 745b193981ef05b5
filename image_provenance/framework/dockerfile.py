"""Reproducibility checks for the build configuration and the dependency manifest.

A reproducible image needs a pinned base, pinned dependencies, and the source
revision declared as a build argument that ends up in the image metadata.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from image_provenance.framework.findings import Finding
from image_provenance.framework.references import parse_image_reference

_VCS_SCHEMES = ("git+", "hg+", "svn+", "bzr+")
_NAME_RE = re.compile(r"^(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)(?:\[[^\]]*\])?\s*(?P<spec>.*)$")


@dataclass(frozen=True)
class Instruction:
    line: int
    keyword: str
    args: str


def parse_instructions(text: str) -> list[Instruction]:
    """Split a Dockerfile into instructions, joining ``\\`` continuations."""

    instructions: list[Instruction] = []
    pending: list[str] = []
    start_line = 0

    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not pending:
            if not stripped or stripped.startswith("#"):
                continue
            start_line = lineno
        elif stripped.startswith("#"):
            # Comment lines inside a continuation are dropped by the builder.
            continue

        if stripped.endswith("\\"):
            pending.append(stripped[:-1].strip())
            continue

        pending.append(stripped)
        joined = " ".join(part for part in pending if part)
        pending = []
        keyword, _, args = joined.partition(" ")
        instructions.append(Instruction(line=start_line, keyword=keyword.upper(), args=args.strip()))

    if pending:
        joined = " ".join(part for part in pending if part)
        keyword, _, args = joined.partition(" ")
        instructions.append(Instruction(line=start_line, keyword=keyword.upper(), args=args.strip()))

    return instructions


def _from_image_and_alias(args: str) -> tuple[str | None, str | None]:
    tokens = [tok for tok in args.split() if not tok.startswith("--")]
    if not tokens:
        return None, None
    image = tokens[0]
    alias = None
    if len(tokens) >= 3 and tokens[1].lower() == "as":
        alias = tokens[2].lower()
    return image, alias


def _check_base_image(image: str, *, path: str, line: int, stages: set[str]) -> Finding | None:
    if image.lower() in stages or image.lower() == "scratch":
        return None
    if "$" in image:
        return Finding("warning", path, line, f"base image {image!r} is set by a build argument; pinning cannot be verified")
    try:
        ref = parse_image_reference(image)
    except ValueError as exc:
        return Finding("error", path, line, f"cannot parse base image {image!r}: {exc}")
    if ref.is_immutable:
        return None
    if ref.tag is None:
        return Finding("error", path, line, f"base image {image!r} has no tag and resolves to mutable 'latest'")
    if ref.tag == "latest":
        return Finding("error", path, line, f"base image {image!r} uses the mutable 'latest' tag")
    return Finding(
        "warning",
        path,
        line,
        f"base image {image!r} is pinned by tag only; add @sha256:<digest> for a reproducible base",
    )


def _arg_names(args: str) -> list[str]:
    return [tok.split("=", 1)[0] for tok in args.split() if tok]


def _references_arg(text: str, name: str) -> bool:
    return re.search(r"\$(?:\{" + re.escape(name) + r"(?:[:}])|" + re.escape(name) + r"\b)", text) is not None


def check_dockerfile(path: str, *, revision_arg: str) -> list[Finding]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Dockerfile not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        instructions = parse_instructions(handle.read())

    findings: list[Finding] = []
    stages: set[str] = set()
    saw_from = False
    arg_line: int | None = None
    labelled = False

    for inst in instructions:
        if inst.keyword == "FROM":
            saw_from = True
            image, alias = _from_image_and_alias(inst.args)
            if image is None:
                findings.append(Finding("error", path, inst.line, "FROM without an image"))
                continue
            finding = _check_base_image(image, path=path, line=inst.line, stages=stages)
            if finding is not None:
                findings.append(finding)
            if alias:
                stages.add(alias)
        elif inst.keyword == "ARG":
            if revision_arg in _arg_names(inst.args):
                arg_line = inst.line
        elif inst.keyword == "LABEL":
            if _references_arg(inst.args, revision_arg):
                labelled = True

    if not saw_from:
        findings.append(Finding("error", path, None, "no FROM instruction; the runtime base is undeclared"))
    if arg_line is None:
        findings.append(
            Finding(
                "warning",
                path,
                None,
                f"ARG {revision_arg} is not declared; the revision will only be recorded by the build label",
            )
        )
    elif not labelled:
        findings.append(
            Finding(
                "warning",
                path,
                arg_line,
                f"ARG {revision_arg} is declared but no LABEL records ${revision_arg}",
            )
        )
    return findings


def _logical_lines(text: str) -> list[tuple[int, str]]:
    lines: list[tuple[int, str]] = []
    pending: list[str] = []
    start = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not pending:
            start = lineno
        if stripped.endswith("\\"):
            pending.append(stripped[:-1].strip())
            continue
        pending.append(stripped)
        lines.append((start, " ".join(part for part in pending if part)))
        pending = []
    if pending:
        lines.append((start, " ".join(part for part in pending if part)))
    return lines


def _strip_comment(line: str) -> str:
    if line.startswith("#"):
        return ""
    idx = line.find(" #")
    return line if idx < 0 else line[:idx].rstrip()


def _vcs_url_pinned(url: str) -> bool:
    after_scheme = url.split("://", 1)[1] if "://" in url else url
    path = after_scheme.split("#", 1)[0]
    _, _, repo_path = path.partition("/")
    return "@" in repo_path


def requirement_is_pinned(requirement: str) -> bool:
    spec = requirement.split(";", 1)[0].strip()
    spec = " ".join(tok for tok in spec.split() if not tok.startswith("--"))

    if "://" in spec:
        url = spec.split("@", 1)[1].strip() if re.match(r"^[A-Za-z0-9._-]+(\[[^\]]*\])?\s*@", spec) else spec
        if url.startswith(_VCS_SCHEMES):
            return _vcs_url_pinned(url)
        return True

    match = _NAME_RE.match(spec)
    if not match:
        return False
    specifiers = [part.strip() for part in match.group("spec").split(",") if part.strip()]
    if len(specifiers) != 1:
        return False
    only = specifiers[0]
    if only.startswith("==="):
        return bool(only[3:].strip())
    if only.startswith("==") and "*" not in only:
        return bool(only[2:].strip())
    return False


def check_requirements(path: str) -> list[Finding]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Requirements file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        text = handle.read()

    findings: list[Finding] = []
    for lineno, line in _logical_lines(text):
        content = _strip_comment(line)
        if not content:
            continue
        if content.startswith(("-e ", "--editable ", "--editable=")):
            target = content.split(None, 1)[1] if " " in content else content.split("=", 1)[1]
            if not (target.startswith(_VCS_SCHEMES) and _vcs_url_pinned(target)):
                findings.append(Finding("error", path, lineno, f"editable requirement is not pinned: {content!r}"))
            continue
        if content.startswith("-"):
            continue
        if not requirement_is_pinned(content):
            findings.append(
                Finding("error", path, lineno, f"requirement is not pinned to an exact version: {content!r}")
            )
    return findings
