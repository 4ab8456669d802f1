"""Execute a generated API plan in order and record an audit log."""

from __future__ import annotations

import contextlib
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from conjuronboard.files import write_json
from conjuronboard.http_errors import ConjurHTTPError, OnboardError, conjur_http_error
from conjuronboard.plan import Operation, Plan

APPLY_LOG_NAME = "apply-log.json"
VALIDATE_LOG_NAME = "validate-log.json"

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class APIClient(Protocol):
    """The subset of the Conjur client used by provisioning."""

    def post(self, path: str, content_type: str, body: bytes | None) -> tuple[int, bytes]: ...

    def delete(self, path: str) -> tuple[int, bytes]: ...

    def get(self, path: str) -> tuple[int, bytes]: ...


@dataclass
class ApplyResult:
    """Summary of an apply run."""

    authenticator_name: str = ""
    workloads_created: int = 0
    memberships_added: int = 0


@dataclass
class ApplyLogEntry:
    """One audited operation in apply-log.json."""

    timestamp: str = ""
    operation_id: str = ""
    method: str = ""
    path: str = ""
    request_body: str = ""
    status: int = 0
    response: str = ""
    no_change: bool = False
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ApplyLogEntry:
        if not isinstance(data, Mapping):
            raise TypeError("apply log entry must be a JSON object")
        return cls(
            timestamp=str(data.get("timestamp") or ""),
            operation_id=str(data.get("operation_id") or ""),
            method=str(data.get("method") or ""),
            path=str(data.get("path") or ""),
            request_body=str(data.get("request_body") or ""),
            status=int(data.get("status") or 0),
            response=str(data.get("response") or ""),
            no_change=bool(data.get("no_change", False)),
            dry_run=bool(data.get("dry_run", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "operation_id": self.operation_id,
            "method": self.method,
            "path": self.path,
        }
        if self.request_body:
            out["request_body"] = self.request_body
        out["status"] = self.status
        if self.response:
            out["response"] = self.response
        if self.no_change:
            out["no_change"] = True
        if self.dry_run:
            out["dry_run"] = True
        return out


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _text(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


def _operation_http_hint(status: int) -> str:
    return {
        401: "check CONJUR_API_KEY and --username; API key auth requires the Conjur API key, "
        "not the UI password",
        403: "the authenticated identity lacks permission for this operation",
        404: "check the generated plan path, target mode, and whether the parent policy "
        "branch exists",
    }.get(status, "")


def _metadata_int(metadata: Mapping[str, str] | None, key: str) -> int:
    if not metadata or key not in metadata:
        return 0
    match = _LEADING_INT.match(metadata[key])
    return int(match.group(1)) if match else 0


def _membership_delta(op: Operation) -> int:
    if op.id.startswith("add-group-member-"):
        return 1
    if op.id == "load-authenticator-grants":
        return _metadata_int(op.metadata, "membership_count")
    return 0


def _write_apply_log(work_dir: str, entries: list[ApplyLogEntry]) -> None:
    write_json(work_dir, APPLY_LOG_NAME, [entry.to_dict() for entry in entries])


def execute_operation(
    client: APIClient, op: Operation, body: bytes | None
) -> tuple[int, bytes]:
    """Dispatch one operation to the client by HTTP method."""
    if op.method == "POST":
        return client.post(op.path, op.content_type, body)
    if op.method == "DELETE":
        return client.delete(op.path)
    if op.method == "GET":
        return client.get(op.path)
    raise OnboardError(f'unsupported method "{op.method}"')


def operation_body(work_dir: str | os.PathLike[str], op: Operation) -> bytes | None:
    """Return the request body for an operation: a whole file or one of its lines."""
    if not op.body_file:
        return None

    path = os.path.join(os.fspath(work_dir), *op.body_file.split("/"))
    if op.body_line <= 0:
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise OnboardError(f"{op.id}: reading body file {path}: {exc}") from exc

    try:
        handle = open(path, "rb")
    except OSError as exc:
        raise OnboardError(f"{op.id}: opening body file {path}: {exc}") from exc
    with handle:
        try:
            for line_no, raw in enumerate(handle, start=1):
                if line_no == op.body_line:
                    return raw.rstrip(b"\n").removesuffix(b"\r") + b"\n"
        except OSError as exc:
            raise OnboardError(f"{op.id}: scanning {path}: {exc}") from exc
    raise OnboardError(f"{op.id}: body line {op.body_line} not found in {path}")


def apply_plan(
    work_dir: str | os.PathLike[str],
    plan: Plan | None,
    client: APIClient | None,
    *,
    dry_run: bool = False,
    verbose: bool = False,
    skip_validate: bool = False,
) -> ApplyResult:
    """Run every plan operation in order, writing apply-log.json as an audit trail."""
    del verbose
    work_dir = os.fspath(work_dir)
    if plan is None:
        raise OnboardError("plan is required")
    if client is None and not dry_run:
        raise OnboardError("client is required unless --dry-run is set")
    if not skip_validate and not dry_run:
        validate_log = os.path.join(work_dir, VALIDATE_LOG_NAME)
        try:
            os.stat(validate_log)
        except FileNotFoundError as exc:
            raise OnboardError(
                "prior validate is required; run validate first or pass --skip-validate"
            ) from exc
        except OSError as exc:
            raise OnboardError(f"checking validate log: {exc}") from exc

    log: list[ApplyLogEntry] = []
    result = ApplyResult(
        authenticator_name=plan.authenticator_name,
        workloads_created=plan.workload_count,
    )

    for op in plan.operations:
        body = operation_body(work_dir, op)
        entry = ApplyLogEntry(
            timestamp=_utc_timestamp(),
            operation_id=op.id,
            method=op.method,
            path=op.path,
            request_body=_text(body),
            dry_run=dry_run,
        )

        if dry_run:
            log.append(entry)
            result.memberships_added += _membership_delta(op)
            continue

        assert client is not None
        try:
            status, response = execute_operation(client, op, body)
        except Exception as exc:
            log.append(entry)
            with contextlib.suppress(OnboardError):
                _write_apply_log(work_dir, log)
            raise OnboardError(f"{op.id}: {exc}") from exc

        entry.status = status
        entry.response = _text(response)
        entry.no_change = status in op.idempotent_on
        log.append(entry)

        if status not in op.expected_status and status not in op.idempotent_on:
            with contextlib.suppress(OnboardError):
                _write_apply_log(work_dir, log)
            hint = _operation_http_hint(status)
            err = conjur_http_error("Conjur operation", status, response, hint)
            raise ConjurHTTPError(f"{op.id}: {err}", status, response, hint) from err

        if not entry.no_change:
            result.memberships_added += _membership_delta(op)

    _write_apply_log(work_dir, log)
    return result