"""The generated API plan consumed by validate, apply and rollback."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from conjuronboard.http_errors import OnboardError


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"{what} must be a JSON object")
    return data


def _get_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"field {key!r} must be a string")
    return value


def _get_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"field {key!r} must be an integer")
    return value


def _get_int_list(data: Mapping[str, Any], key: str) -> list[int]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or any(
        isinstance(item, bool) or not isinstance(item, int) for item in value
    ):
        raise TypeError(f"field {key!r} must be a list of integers")
    return list(value)


def _get_str_map(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping) or any(
        not isinstance(item, str) for item in value.values()
    ):
        raise TypeError(f"field {key!r} must be an object of strings")
    return dict(value)


@dataclass
class Operation:
    """One generated API call in execution order."""

    id: str = ""
    description: str = ""
    method: str = ""
    path: str = ""
    body_file: str = ""
    body_line: int = 0
    content_type: str = ""
    expected_status: list[int] = field(default_factory=list)
    idempotent_on: list[int] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Operation:
        data = _require_mapping(data, "operation")
        return cls(
            id=_get_str(data, "id"),
            description=_get_str(data, "description"),
            method=_get_str(data, "method"),
            path=_get_str(data, "path"),
            body_file=_get_str(data, "body_file"),
            body_line=_get_int(data, "body_line"),
            content_type=_get_str(data, "content_type"),
            expected_status=_get_int_list(data, "expected_status"),
            idempotent_on=_get_int_list(data, "idempotent_on"),
            metadata=_get_str_map(data, "metadata"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "method": self.method,
            "path": self.path,
        }
        if self.body_file:
            out["body_file"] = self.body_file
        if self.body_line:
            out["body_line"] = self.body_line
        if self.content_type:
            out["content_type"] = self.content_type
        out["expected_status"] = list(self.expected_status)
        if self.idempotent_on:
            out["idempotent_on"] = list(self.idempotent_on)
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out


@dataclass
class Plan:
    """The manifest describing every operation to run against Conjur."""

    version: str = ""
    platform: str = ""
    tenant: str = ""
    conjur_url: str = ""
    conjur_target: str = ""
    authenticator_type: str = ""
    authenticator_subtype: str = ""
    authenticator_name: str = ""
    provisioning_mode: str = ""
    apps_group_id: str = ""
    identity_path: str = ""
    workload_count: int = 0
    operations: list[Operation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Plan:
        data = _require_mapping(data, "plan")
        raw_ops = data.get("operations")
        if raw_ops is None:
            raw_ops = []
        if not isinstance(raw_ops, list):
            raise TypeError("field 'operations' must be a list")
        return cls(
            version=_get_str(data, "version"),
            platform=_get_str(data, "platform"),
            tenant=_get_str(data, "tenant"),
            conjur_url=_get_str(data, "conjur_url"),
            conjur_target=_get_str(data, "conjur_target"),
            authenticator_type=_get_str(data, "authenticator_type"),
            authenticator_subtype=_get_str(data, "authenticator_subtype"),
            authenticator_name=_get_str(data, "authenticator_name"),
            provisioning_mode=_get_str(data, "provisioning_mode"),
            apps_group_id=_get_str(data, "apps_group_id"),
            identity_path=_get_str(data, "identity_path"),
            workload_count=_get_int(data, "workload_count"),
            operations=[Operation.from_dict(op) for op in raw_ops],
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "platform": self.platform,
            "tenant": self.tenant,
        }
        if self.conjur_url:
            out["conjur_url"] = self.conjur_url
        if self.conjur_target:
            out["conjur_target"] = self.conjur_target
        out["authenticator_type"] = self.authenticator_type
        if self.authenticator_subtype:
            out["authenticator_subtype"] = self.authenticator_subtype
        out["authenticator_name"] = self.authenticator_name
        if self.provisioning_mode:
            out["provisioning_mode"] = self.provisioning_mode
        out["apps_group_id"] = self.apps_group_id
        out["identity_path"] = self.identity_path
        out["workload_count"] = self.workload_count
        out["operations"] = [op.to_dict() for op in self.operations]
        return out


def load_plan(work_dir: str | os.PathLike[str]) -> Plan:
    """Read api/plan.json from a working directory."""
    path = os.path.join(os.fspath(work_dir), "api", "plan.json")
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OnboardError(f"reading {path}: {exc}") from exc
    try:
        return Plan.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise OnboardError(f"parsing {path}: {exc}") from exc