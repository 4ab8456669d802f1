"""Non-mutating checks that a generated plan is readable and matches tenant state."""

from __future__ import annotations

import contextlib
import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from conjuronboard.apply import VALIDATE_LOG_NAME, APIClient, operation_body
from conjuronboard.files import write_json
from conjuronboard.http_errors import OnboardError, conjur_http_error
from conjuronboard.plan import Plan

_UNAUTHORIZED_HINT = (
    "check CONJUR_API_KEY and --username; API key auth requires the Conjur API key, "
    "not the UI password"
)
_FORBIDDEN_HINT = "check Authn_Admins membership"
_SUPPORTED_MODES = ("bootstrap", "workloads-only")


@dataclass
class ValidateResult:
    """Summary of a validate run."""

    checked: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class ValidateLogEntry:
    """One check recorded in validate-log.json."""

    timestamp: str = ""
    operation_id: str = ""
    check: str = ""
    status: int = 0
    result: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "operation_id": self.operation_id,
            "check": self.check,
        }
        if self.status:
            out["status"] = self.status
        out["result"] = self.result
        return out


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _quoted(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _path_escape(value: str) -> str:
    return quote(value, safe="$&+,:;=@")


def _text(body: bytes | str | None) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


def _write_log(work_dir: str, log: list[ValidateLogEntry]) -> None:
    write_json(work_dir, VALIDATE_LOG_NAME, [entry.to_dict() for entry in log])


def _fail(work_dir: str, log: list[ValidateLogEntry], error: Exception) -> Exception:
    with contextlib.suppress(OnboardError):
        _write_log(work_dir, log)
    return error


def _probe(
    client: APIClient,
    path: str,
    log: list[ValidateLogEntry],
    operation_id: str,
    check: str,
) -> tuple[int, bytes]:
    """GET a path and log the outcome; re-raise client errors after logging."""
    try:
        status, body = client.get(path)
    except Exception:
        log.append(
            ValidateLogEntry(
                timestamp=_utc_timestamp(), operation_id=operation_id, check=check
            )
        )
        raise
    log.append(
        ValidateLogEntry(
            timestamp=_utc_timestamp(),
            operation_id=operation_id,
            check=check,
            status=status,
            result=_text(body).strip(),
        )
    )
    return status, body


def validate_plan(
    work_dir: str | os.PathLike[str],
    plan: Plan | None,
    client: APIClient | None,
    *,
    dry_run: bool = False,
    verbose: bool = False,
) -> ValidateResult:
    """Check every plan body is readable and the tenant state fits the provisioning mode."""
    del verbose
    work_dir = os.fspath(work_dir)
    if plan is None:
        raise OnboardError("plan is required")
    if client is None and not dry_run:
        raise OnboardError("client is required unless --dry-run is set")

    result = ValidateResult()
    log: list[ValidateLogEntry] = []

    for op in plan.operations:
        operation_body(work_dir, op)
        result.checked += 1
        log.append(
            ValidateLogEntry(
                timestamp=_utc_timestamp(),
                operation_id=op.id,
                check="body-readable",
                result="ok",
            )
        )

    if dry_run:
        _write_log(work_dir, log)
        return result

    assert client is not None
    try:
        status, body = _probe(
            client, "/api/authenticators", log, "tenant-authenticators-list", "tenant-reachable"
        )
    except Exception as exc:
        raise _fail(
            work_dir, log, OnboardError(f"Conjur endpoint reachability check failed: {exc}")
        ) from exc
    if status == 401:
        raise _fail(
            work_dir,
            log,
            conjur_http_error(
                "Conjur authentication failed while validating plan",
                status,
                body,
                _UNAUTHORIZED_HINT,
            ),
        )
    if status == 403:
        raise _fail(
            work_dir,
            log,
            conjur_http_error(
                "Conjur identity lacks permission to list authenticators",
                status,
                body,
                _FORBIDDEN_HINT,
            ),
        )
    if status >= 400:
        result.warnings.append(
            f"Conjur endpoint reachability returned HTTP {status}; "
            "apply may still fail if API path differs"
        )

    name = plan.authenticator_name
    if not name:
        raise _fail(
            work_dir,
            log,
            OnboardError("authenticator name is required for mode-aware validation"),
        )

    mode = plan.provisioning_mode or "bootstrap"
    if mode not in _SUPPORTED_MODES:
        raise _fail(
            work_dir, log, OnboardError(f"unsupported provisioning mode {_quoted(mode)}")
        )

    authn_path = "/api/authenticators/" + _path_escape(name)
    try:
        status, body = _probe(
            client, authn_path, log, "authenticator-mode-check", f"{mode}-authenticator-state"
        )
    except Exception as exc:
        raise _fail(
            work_dir,
            log,
            OnboardError(f"authenticator {_quoted(name)} validation failed: {exc}"),
        ) from exc
    if status == 401:
        raise _fail(
            work_dir,
            log,
            conjur_http_error(
                f"Conjur authentication failed while validating authenticator {_quoted(name)}",
                status,
                body,
                _UNAUTHORIZED_HINT,
            ),
        )
    if status == 403:
        raise _fail(
            work_dir,
            log,
            conjur_http_error(
                f"Conjur identity lacks permission to inspect authenticator {_quoted(name)}",
                status,
                body,
                _FORBIDDEN_HINT,
            ),
        )

    if status == 404 and mode == "workloads-only":
        raise _fail(
            work_dir,
            log,
            OnboardError(
                f"workloads-only mode requires existing authenticator {_quoted(name)}; "
                "run bootstrap first or pass --authenticator-name for the existing org "
                "authenticator"
            ),
        )
    if status == 404 and mode == "bootstrap":
        pass  # expected first-run state
    elif 200 <= status < 300:
        conflict = authenticator_conflict(plan, body)
        if conflict:
            raise _fail(
                work_dir,
                log,
                OnboardError(
                    f"existing authenticator {_quoted(name)} conflicts with generated plan: "
                    f"{conflict}"
                ),
            )
        if mode == "bootstrap":
            result.warnings.append(
                f"authenticator {_quoted(name)} already exists and appears compatible; "
                "apply may treat creation as no change"
            )
    elif status >= 400:
        raise _fail(
            work_dir,
            log,
            conjur_http_error(f"authenticator {_quoted(name)} validation", status, body, ""),
        )

    _write_log(work_dir, log)
    return result


def _str_field(data: Any, key: str) -> str:
    if not isinstance(data, dict):
        return ""
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def _object_field(data: Any, key: str) -> Any:
    if not isinstance(data, dict):
        return None
    value = data.get(key)
    if value is not None and not isinstance(value, dict):
        raise ValueError(f"field {key!r} must be an object")
    return value


def authenticator_conflict(plan: Plan, body: bytes | str | None) -> str:
    """Describe how an existing authenticator differs from the plan, or return ""."""
    text = _text(body)
    if not text.strip():
        return ""

    try:
        snapshot = json.loads(text)
        if snapshot is not None and not isinstance(snapshot, dict):
            raise ValueError("expected a JSON object")
        name = _str_field(snapshot, "name")
        auth_type = _str_field(snapshot, "type")
        subtype = _str_field(snapshot, "subtype")
        identity_path = _str_field(snapshot, "identity_path")
        identity = _object_field(_object_field(snapshot, "data"), "identity")
        nested_identity_path = _str_field(identity, "identity_path")
    except ValueError as exc:
        return f"could not parse existing authenticator response: {exc}"

    if name and name != plan.authenticator_name:
        return f"name is {_quoted(name)}, want {_quoted(plan.authenticator_name)}"
    if auth_type and plan.authenticator_type and auth_type != plan.authenticator_type:
        return f"type is {_quoted(auth_type)}, want {_quoted(plan.authenticator_type)}"
    if subtype and plan.authenticator_subtype and subtype != plan.authenticator_subtype:
        return f"subtype is {_quoted(subtype)}, want {_quoted(plan.authenticator_subtype)}"

    existing = identity_path or nested_identity_path
    if existing and plan.identity_path and existing != plan.identity_path:
        return f"identity_path is {_quoted(existing)}, want {_quoted(plan.identity_path)}"
    return ""