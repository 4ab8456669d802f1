"""Undo an applied plan by running inverse operations in reverse order."""

from __future__ import annotations

import contextlib
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote, quote_plus

from conjuronboard.apply import APPLY_LOG_NAME, APIClient, ApplyLogEntry, execute_operation
from conjuronboard.files import write_json
from conjuronboard.http_errors import OnboardError
from conjuronboard.plan import Operation, Plan

ROLLBACK_LOG_NAME = "rollback-log.json"
ROLLED_BACK_LOG_NAME = "apply-log.rolled-back.json"

_ACCEPTED_STATUSES = frozenset({200, 202, 204, 404})


@dataclass
class RollbackResult:
    """Summary of a rollback run."""

    operations_run: int = 0
    skipped: int = 0


@dataclass
class RollbackLogEntry:
    """One inverse operation or skip recorded in rollback-log.json."""

    timestamp: str = ""
    operation_id: str = ""
    source_id: str = ""
    method: str = ""
    path: str = ""
    status: int = 0
    response: str = ""
    skipped: bool = False
    reason: str = ""
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "operation_id": self.operation_id,
        }
        optional: list[tuple[str, Any]] = [
            ("source_id", self.source_id),
            ("method", self.method),
            ("path", self.path),
            ("status", self.status),
            ("response", self.response),
            ("skipped", self.skipped),
            ("reason", self.reason),
            ("dry_run", self.dry_run),
        ]
        out.update((key, value) for key, value in optional if value)
        return out


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _query_escape(value: str) -> str:
    return quote_plus(value, safe="")


def _path_escape(value: str) -> str:
    return quote(value, safe="$&+,:;=@")


def _entry_was_applied(entry: ApplyLogEntry) -> bool:
    if entry.dry_run or entry.no_change or entry.status == 0:
        return False
    return 200 <= entry.status < 300


def _split_metadata_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _workload_delete_path(workload_id: str) -> str:
    return "/api/workloads/" + _path_escape(workload_id)


def _authenticator_delete_path(create_path: str, name: str) -> str:
    name_path = _path_escape(name)
    path = create_path.strip()
    if not path:
        return "/api/authenticators/" + name_path
    if not path.startswith("/"):
        path = "/" + path
    if path in ("/api/authenticators", "/api/authenticators/"):
        return "/api/authenticators/" + name_path
    return path.rstrip("/") + "/" + name_path


def rollback_kind(op: Operation) -> str:
    """Return the rollback mapping kind for an operation, or an empty string."""
    kind = (op.metadata or {}).get("rollback_kind", "").strip()
    if kind:
        return kind
    if op.id.startswith("add-group-member-"):
        return "group-member"
    if op.id == "load-workload-policy":
        return "workload-policy"
    if op.id == "create-authenticator":
        return "authenticator"
    return ""


def inverse_operations(
    source_op: Operation, entry: ApplyLogEntry, plan: Plan
) -> list[Operation]:
    """Return the operations that undo source_op; raise ValueError when none apply."""
    del entry
    metadata = source_op.metadata or {}
    kind = rollback_kind(source_op)

    if kind == "group-member":
        workload_id = metadata.get("workload_id", "")
        if not workload_id:
            raise ValueError("group member operation missing workload_id metadata")
        member_kind = metadata.get("member_kind", "") or "workload"
        separator = "&" if "?" in source_op.path else "?"
        path = (
            f"{source_op.path}{separator}id={_query_escape(workload_id)}"
            f"&kind={_query_escape(member_kind)}"
        )
        return [Operation(id="rollback-" + source_op.id, method="DELETE", path=path)]

    if kind == "workload-policy":
        workload_ids = _split_metadata_list(metadata.get("workload_ids", ""))
        if not workload_ids:
            raise ValueError("workload policy operation missing workload_ids metadata")
        return [
            Operation(
                id=f"rollback-delete-workload-{number:03d}",
                method="DELETE",
                path=_workload_delete_path(workload_id),
            )
            for number, workload_id in enumerate(reversed(workload_ids), start=1)
        ]

    if kind == "authenticator":
        name = metadata.get("authenticator_name", "") or plan.authenticator_name
        if not name:
            raise ValueError("authenticator name not found")
        return [
            Operation(
                id="rollback-create-authenticator",
                method="DELETE",
                path=_authenticator_delete_path(source_op.path, name),
            )
        ]

    raise ValueError("operation has no rollback mapping")


def load_apply_log(work_dir: str | os.PathLike[str]) -> list[ApplyLogEntry]:
    """Read apply-log.json from a working directory."""
    path = os.path.join(os.fspath(work_dir), APPLY_LOG_NAME)
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OnboardError(f"reading {path}: {exc}") from exc
    try:
        data = json.loads(raw)
        if data is None:
            return []
        if not isinstance(data, list):
            raise TypeError("apply log must be a JSON array")
        return [ApplyLogEntry.from_dict(item) for item in data]
    except (ValueError, TypeError) as exc:
        raise OnboardError(f"parsing {path}: {exc}") from exc


def _skipped_entry(entry: ApplyLogEntry, reason: str, dry_run: bool) -> RollbackLogEntry:
    return RollbackLogEntry(
        timestamp=_utc_timestamp(),
        source_id=entry.operation_id,
        skipped=True,
        reason=reason,
        dry_run=dry_run,
    )


def _write_rollback_log(work_dir: str, entries: list[RollbackLogEntry]) -> None:
    write_json(work_dir, ROLLBACK_LOG_NAME, [entry.to_dict() for entry in entries])


def _mark_apply_log_rolled_back(work_dir: str) -> None:
    source = os.path.join(work_dir, APPLY_LOG_NAME)
    target = os.path.join(work_dir, ROLLED_BACK_LOG_NAME)
    try:
        os.replace(source, target)
    except OSError as exc:
        raise OnboardError(f"marking apply log as rolled back: {exc}") from exc


def rollback(
    work_dir: str | os.PathLike[str],
    plan: Plan | None,
    client: APIClient | None,
    *,
    dry_run: bool = False,
    confirm: bool = False,
    verbose: bool = False,
) -> RollbackResult:
    """Undo applied operations newest first and write rollback-log.json."""
    del verbose
    work_dir = os.fspath(work_dir)
    if plan is None:
        raise OnboardError("plan is required")
    if not confirm and not dry_run:
        raise OnboardError("rollback requires --confirm")
    if client is None and not dry_run:
        raise OnboardError("client is required unless --dry-run is set")

    apply_log = load_apply_log(work_dir)
    operations_by_id = {op.id: op for op in plan.operations}

    result = RollbackResult()
    log: list[RollbackLogEntry] = []

    for entry in reversed(apply_log):
        if not _entry_was_applied(entry):
            continue

        source_op = operations_by_id.get(entry.operation_id)
        if source_op is None:
            result.skipped += 1
            log.append(_skipped_entry(entry, "source operation not found in plan", dry_run))
            continue

        try:
            inverses = inverse_operations(source_op, entry, plan)
        except ValueError as exc:
            result.skipped += 1
            log.append(_skipped_entry(entry, str(exc), dry_run))
            continue

        for inverse in inverses:
            log_entry = RollbackLogEntry(
                timestamp=_utc_timestamp(),
                operation_id=inverse.id,
                source_id=entry.operation_id,
                method=inverse.method,
                path=inverse.path,
                dry_run=dry_run,
            )

            if dry_run:
                log.append(log_entry)
                result.operations_run += 1
                continue

            assert client is not None
            try:
                status, response = execute_operation(client, inverse, None)
            except Exception as exc:
                log.append(log_entry)
                with contextlib.suppress(OnboardError):
                    _write_rollback_log(work_dir, log)
                raise OnboardError(f"{inverse.id}: {exc}") from exc

            text = response.decode("utf-8", errors="replace") if response else ""
            log_entry.status = status
            log_entry.response = text
            log.append(log_entry)

            if status not in _ACCEPTED_STATUSES:
                with contextlib.suppress(OnboardError):
                    _write_rollback_log(work_dir, log)
                raise OnboardError(f"{inverse.id}: unexpected HTTP {status}: {text}")
            result.operations_run += 1

    _write_rollback_log(work_dir, log)
    if not dry_run:
        _mark_apply_log_rolled_back(work_dir)
    return result