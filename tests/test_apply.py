import json
from dataclasses import dataclass, field

import pytest

from conjuronboard.apply import (
    ApplyLogEntry,
    apply_plan,
    execute_operation,
    operation_body,
)
from conjuronboard.http_errors import ConjurHTTPError, OnboardError
from conjuronboard.plan import Operation, Plan

MEMBER_BODY = '{"id":"data/github-apps/acme/acme/api","kind":"workload"}\n'


@dataclass
class FakeResponse:
    status: int
    body: str = ""
    error: Exception | None = None


@dataclass
class FakeClient:
    post_responses: list = field(default_factory=list)
    get_responses: list = field(default_factory=list)
    delete_responses: list = field(default_factory=list)
    calls: list = field(default_factory=list)

    def _next(self, responses):
        if not responses:
            return 500, b'{"error":"missing fake response"}'
        response = responses.pop(0)
        if response.error is not None:
            raise response.error
        return response.status, response.body.encode()

    def post(self, path, content_type, body):
        self.calls.append(("POST", path, content_type, (body or b"").decode()))
        return self._next(self.post_responses)

    def delete(self, path):
        self.calls.append(("DELETE", path, "", ""))
        return self._next(self.delete_responses)

    def get(self, path):
        self.calls.append(("GET", path, "", ""))
        return self._next(self.get_responses)


def make_plan():
    return Plan(
        version="v1alpha1",
        platform="github",
        tenant="myco",
        authenticator_type="jwt",
        authenticator_subtype="github_actions",
        authenticator_name="github-acme",
        provisioning_mode="bootstrap",
        identity_path="data/github-apps/acme",
        workload_count=1,
        operations=[
            Operation(
                id="create-authenticator",
                method="POST",
                path="/api/authenticators",
                body_file="api/01-create-authenticator.json",
                content_type="application/json",
                expected_status=[201],
                idempotent_on=[409],
            ),
            Operation(
                id="add-group-member-001",
                method="POST",
                path="/api/groups/conjur%2Fauthn-jwt%2Fgithub-acme%2Fapps/members",
                body_file="api/03-add-group-members.jsonl",
                body_line=1,
                content_type="application/json",
                expected_status=[201],
                idempotent_on=[409],
            ),
        ],
    )


@pytest.fixture
def work_dir(tmp_path):
    api = tmp_path / "api"
    api.mkdir()
    (api / "01-create-authenticator.json").write_text('{"name":"github-acme"}\n')
    (api / "03-add-group-members.jsonl").write_text(MEMBER_BODY)
    return tmp_path


@pytest.fixture
def validated(work_dir):
    (work_dir / "validate-log.json").write_text("[]")
    return work_dir


def read_log(work_dir):
    return json.loads((work_dir / "apply-log.json").read_text())


def test_apply_executes_plan_and_writes_audit_log(validated):
    client = FakeClient(
        post_responses=[
            FakeResponse(201, '{"created":"authn"}'),
            FakeResponse(201, '{"added":"member"}'),
        ]
    )
    result = apply_plan(validated, make_plan(), client)

    assert result.authenticator_name == "github-acme"
    assert result.workloads_created == 1
    assert result.memberships_added == 1
    assert len(client.calls) == 2
    assert client.calls[1][3] == MEMBER_BODY

    log = read_log(validated)
    assert len(log) == 2
    assert log[1]["operation_id"] == "add-group-member-001"
    assert log[1]["status"] == 201


def test_apply_treats_idempotent_status_as_no_change(validated):
    client = FakeClient(
        post_responses=[
            FakeResponse(409, '{"error":"exists"}'),
            FakeResponse(409, '{"error":"member exists"}'),
        ]
    )
    result = apply_plan(validated, make_plan(), client)

    assert result.memberships_added == 0
    log = read_log(validated)
    assert len(log) == 2
    assert all(entry["no_change"] for entry in log)


def test_apply_stops_at_first_unexpected_status_and_writes_partial_log(validated):
    plan = make_plan()
    plan.operations.append(
        Operation(
            id="unreached",
            method="POST",
            path="/api/unreached",
            body_file="api/01-create-authenticator.json",
            content_type="application/json",
            expected_status=[201],
        )
    )
    client = FakeClient(
        post_responses=[
            FakeResponse(201, '{"created":"authn"}'),
            FakeResponse(500, '{"error":"boom"}'),
            FakeResponse(201, '{"should":"not run"}'),
        ]
    )
    with pytest.raises(ConjurHTTPError) as excinfo:
        apply_plan(validated, plan, client)

    assert "add-group-member-001" in str(excinfo.value)
    assert excinfo.value.status == 500
    assert len(client.calls) == 2
    assert len(read_log(validated)) == 2


def test_apply_requires_prior_validate_unless_skipped(work_dir):
    client = FakeClient(post_responses=[FakeResponse(201), FakeResponse(201)])
    with pytest.raises(OnboardError, match="prior validate is required"):
        apply_plan(work_dir, make_plan(), client)
    assert client.calls == []


def test_apply_skip_validate_runs_without_validate_log(work_dir):
    client = FakeClient(post_responses=[FakeResponse(201), FakeResponse(201)])
    result = apply_plan(work_dir, make_plan(), client, skip_validate=True)
    assert result.memberships_added == 1
    assert len(client.calls) == 2


def test_apply_returns_client_error_and_writes_partial_log(validated):
    client = FakeClient(post_responses=[FakeResponse(0, error=ConnectionError("network down"))])
    with pytest.raises(OnboardError, match="network down"):
        apply_plan(validated, make_plan(), client)

    log = read_log(validated)
    assert len(log) == 1
    assert log[0]["status"] == 0


def test_apply_requires_plan(validated):
    with pytest.raises(OnboardError, match="plan is required"):
        apply_plan(validated, None, FakeClient())


def test_apply_requires_client_unless_dry_run(validated):
    with pytest.raises(OnboardError, match="client is required"):
        apply_plan(validated, make_plan(), None)


def test_apply_dry_run_counts_memberships_and_grants(work_dir):
    plan = make_plan()
    plan.operations.append(
        Operation(
            id="load-authenticator-grants",
            method="POST",
            path="/policies/conjur/policy/root",
            metadata={"membership_count": "3"},
        )
    )
    result = apply_plan(work_dir, plan, None, dry_run=True)

    assert result.memberships_added == 4
    log = read_log(work_dir)
    assert [entry["operation_id"] for entry in log] == [
        "create-authenticator",
        "add-group-member-001",
        "load-authenticator-grants",
    ]
    assert all(entry["dry_run"] for entry in log)


def test_operation_body_reads_selected_line(tmp_path):
    (tmp_path / "lines.jsonl").write_text("first\r\nsecond\nthird")
    op = Operation(id="op", body_file="lines.jsonl", body_line=1)
    assert operation_body(tmp_path, op) == b"first\n"
    op.body_line = 3
    assert operation_body(tmp_path, op) == b"third\n"


def test_operation_body_missing_line(tmp_path):
    (tmp_path / "lines.jsonl").write_text("only\n")
    op = Operation(id="op-x", body_file="lines.jsonl", body_line=5)
    with pytest.raises(OnboardError, match="op-x: body line 5 not found"):
        operation_body(tmp_path, op)


def test_operation_body_without_file_is_none(tmp_path):
    assert operation_body(tmp_path, Operation(id="op")) is None


def test_operation_body_missing_file(tmp_path):
    op = Operation(id="op", body_file="missing.json")
    with pytest.raises(OnboardError, match="reading body file"):
        operation_body(tmp_path, op)


def test_execute_operation_rejects_unknown_method():
    with pytest.raises(OnboardError, match='unsupported method "PATCH"'):
        execute_operation(FakeClient(), Operation(id="op", method="PATCH"), None)


def test_execute_operation_dispatches_delete():
    client = FakeClient(delete_responses=[FakeResponse(204, "")])
    status, body = execute_operation(client, Operation(method="DELETE", path="/x"), None)
    assert (status, body) == (204, b"")
    assert client.calls == [("DELETE", "/x", "", "")]


def test_apply_log_entry_round_trip_omits_empty_fields():
    entry = ApplyLogEntry(timestamp="t", operation_id="op", method="POST", path="/p", status=201)
    data = entry.to_dict()
    assert data == {
        "timestamp": "t",
        "operation_id": "op",
        "method": "POST",
        "path": "/p",
        "status": 201,
    }
    assert ApplyLogEntry.from_dict(data) == entry