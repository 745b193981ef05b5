from __future__ import annotations

import pandas as pd

from image_provenance.framework.artifacts import read_ledger

HISTORY_COLUMNS: list[str] = [
    "created_at",
    "build_id",
    "status",
    "branch",
    "kind",
    "tag",
    "commit",
    "image_id",
    "repo_digest",
    "pushed",
]


def load_history(ledger_path: str) -> pd.DataFrame:
    entries = read_ledger(ledger_path)
    df = pd.DataFrame(entries)
    for column in HISTORY_COLUMNS:
        if column not in df.columns:
            df[column] = None
    df = df[HISTORY_COLUMNS]
    if not df.empty:
        # Ledger order breaks ties between entries recorded in the same second.
        df = df.iloc[::-1].sort_values("created_at", ascending=False, kind="stable").reset_index(drop=True)
    return df


def _short(value: object, length: int) -> str:
    if not isinstance(value, str) or not value:
        return "-"
    if value.startswith("sha256:"):
        return value[: len("sha256:") + length]
    return value[:length]


def format_history(
    df: pd.DataFrame,
    *,
    branch: str | None = None,
    kind: str | None = None,
    limit: int = 20,
) -> str:
    view = df
    if branch:
        view = view[view["branch"] == branch]
    if kind:
        view = view[view["kind"] == kind]
    if limit > 0:
        view = view.head(limit)
    if view.empty:
        return "No builds recorded."

    table = pd.DataFrame(
        {
            "created_at": view["created_at"].fillna("-"),
            "status": view["status"].fillna("-"),
            "tag": view["tag"].fillna("-"),
            "kind": view["kind"].fillna("-"),
            "commit": view["commit"].map(lambda v: _short(v, 12)),
            "digest": view["repo_digest"].map(lambda v: _short(v, 12)),
            "build_id": view["build_id"].fillna("-"),
        }
    )
    return table.to_string(index=False)
