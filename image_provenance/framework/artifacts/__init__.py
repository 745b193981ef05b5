"""Build/deploy records and the append-only JSONL ledgers that index them."""

from .ledger import (
    LEDGER_SCHEMA_VERSION,
    TagConflictError,
    append_ledger_entry,
    check_tag_conflict,
    find_build,
    generate_unique_id,
    ledger_lock,
    read_ledger,
    successful,
    utc_now_iso8601,
)
from .records import (
    BuildRecord,
    DeployRecord,
    record_path,
    redact_build_args,
    write_build_record,
    write_record,
)

__all__ = [
    "LEDGER_SCHEMA_VERSION",
    "BuildRecord",
    "DeployRecord",
    "TagConflictError",
    "append_ledger_entry",
    "check_tag_conflict",
    "find_build",
    "generate_unique_id",
    "ledger_lock",
    "read_ledger",
    "record_path",
    "redact_build_args",
    "successful",
    "utc_now_iso8601",
    "write_build_record",
    "write_record",
]
