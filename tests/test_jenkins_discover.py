import json

import httpx
import pytest

from conjuronboard.http_errors import OnboardError
from conjuronboard.jenkins_discover import (
    DiscoverConfig,
    DiscoveryResult,
    JobInfo,
    discover,
    infer_job_type,
    job_tree,
    leaf_name,
    load_discovery,
    load_jobs_file,
    parent_name,
    safe_name,
)


def _write(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return str(path)


def test_load_jobs_file_supports_scope_types_and_spaces(tmp_path):
    path = _write(
        tmp_path,
        "jobs.txt",
        "# selected Jenkins scopes\n"
        "GlobalCredentials|global\n"
        "Payments Team|folder\n"
        "Payments Team/API Deploy|pipeline\n",
    )
    jobs = load_jobs_file(path)
    assert len(jobs) == 3
    assert (jobs[0].full_name, jobs[0].type) == ("GlobalCredentials", "global")
    assert (jobs[1].full_name, jobs[1].type) == ("Payments Team", "folder")
    assert jobs[2].parent == "Payments Team"
    assert jobs[2].name == "API Deploy"


def test_load_jobs_file_infers_and_normalizes_types(tmp_path):
    path = _write(tmp_path, "jobs.txt", "Zeta|weird\nGlobalCredentials\nAlpha/Beta|\n")
    jobs = load_jobs_file(path)
    assert [job.full_name for job in jobs] == ["Alpha/Beta", "GlobalCredentials", "Zeta"]
    assert [job.type for job in jobs] == ["scope", "global", "scope"]


def test_load_jobs_file_rejects_missing_full_name(tmp_path):
    path = _write(tmp_path, "jobs.txt", "Good|job\n|folder\n")
    with pytest.raises(OnboardError, match=r":2 missing Jenkins full name"):
        load_jobs_file(path)


def test_load_jobs_file_missing_file(tmp_path):
    with pytest.raises(OnboardError, match="reading jobs file"):
        load_jobs_file(str(tmp_path / "absent.txt"))


def test_discover_from_jobs_file_derives_issuer_and_jwks(tmp_path):
    path = _write(tmp_path, "jobs.txt", "Payments/API|pipeline\n")
    result = discover(
        DiscoverConfig(jenkins_url="https://jenkins.example.com/", jobs_from_file=path)
    )
    assert result.oidc_issuer == "https://jenkins.example.com"
    assert result.jwks_uri == "https://jenkins.example.com/jwtauth/conjur-jwk-set"
    assert result.source == "jobs-from-file"
    assert result.controller == "jenkins.example.com"
    assert result.controller_slug == "jenkins-example-com"
    assert result.metadata["jobs_file"] == path


def test_discover_requires_url():
    with pytest.raises(OnboardError, match="--url is required"):
        discover(DiscoverConfig(jenkins_url="  "))


def test_discover_requires_scheme_and_host():
    with pytest.raises(OnboardError, match="scheme and host"):
        discover(DiscoverConfig(jenkins_url="jenkins.example.com"))


def _api_handler(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/ci/api/json":
            return httpx.Response(
                200,
                headers={"X-Jenkins": "2.440"},
                json={
                    "jobs": [
                        {
                            "name": "Payments",
                            "fullName": "Payments",
                            "_class": "com.cloudbees.hudson.plugins.folder.Folder",
                            "jobs": [
                                {
                                    "name": "deploy",
                                    "fullName": "Payments/deploy",
                                    "url": "https://jenkins.example.com/ci/job/Payments/job/deploy/",
                                    "_class": "org.jenkinsci.plugins.workflow.job.WorkflowJob",
                                }
                            ],
                        },
                        {"name": "Build", "_class": "hudson.model.FreeStyleProject"},
                    ]
                },
            )
        if request.url.path == "/ci/pluginManager/api/json":
            return httpx.Response(
                200,
                json={"plugins": [{"shortName": "conjur-credentials", "version": "2.2.5"}]},
            )
        return httpx.Response(404)

    return handler


def test_discover_from_api_flattens_jobs():
    seen = []
    client = httpx.Client(transport=httpx.MockTransport(_api_handler(seen)))
    result = discover(
        DiscoverConfig(
            jenkins_url="https://jenkins.example.com/ci/?x=1",
            username="user",
            token="token",
            max_depth=2,
        ),
        client,
    )
    assert result.jenkins_url == "https://jenkins.example.com/ci"
    assert result.source == "api"
    assert result.version == "2.440"
    assert result.plugin_version == "2.2.5"
    assert result.warnings == []
    assert result.metadata["max_depth"] == "2"
    assert [job.full_name for job in result.jobs] == ["Build", "Payments", "Payments/deploy"]
    assert [job.type for job in result.jobs] == ["job", "folder", "pipeline"]
    assert result.jobs[2].parent == "Payments"
    assert seen[0].url.params["tree"] == "jobs[name,fullName,url,_class,jobs[name,fullName,url,_class]]"
    assert seen[0].headers["Authorization"].startswith("Basic ")


def test_discover_from_api_defaults_depth_and_warns_on_missing_plugin():
    def handler(request):
        if request.url.path == "/api/json":
            return httpx.Response(200, json={"jobs": []})
        return httpx.Response(200, json={"plugins": [{"shortName": "git", "version": "5"}]})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    result = discover(DiscoverConfig(jenkins_url="https://jenkins.example.com"), client)
    assert result.metadata["max_depth"] == "6"
    assert result.jobs == []
    assert result.warnings == ["Conjur Jenkins plugin was not found in pluginManager output"]


def test_discover_from_api_reports_unauthorized():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
    with pytest.raises(OnboardError, match="HTTP 401 while listing jobs"):
        discover(DiscoverConfig(jenkins_url="https://jenkins.example.com"), client)


def test_discover_from_api_reports_server_error_body():
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text=" boom "))
    )
    with pytest.raises(OnboardError, match="HTTP 500 while listing jobs: boom"):
        discover(DiscoverConfig(jenkins_url="https://jenkins.example.com"), client)


def test_discover_plugin_http_error_becomes_warning():
    def handler(request):
        if request.url.path == "/api/json":
            return httpx.Response(200, json={"jobs": []})
        return httpx.Response(403)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    result = discover(DiscoverConfig(jenkins_url="https://jenkins.example.com"), client)
    assert result.plugin_version == ""
    assert result.warnings == [
        "could not detect Conjur Jenkins plugin version: Jenkins API returned HTTP 403"
    ]


@pytest.mark.parametrize(
    "full_name, parent, leaf",
    [
        ("Payments/API/deploy", "Payments/API", "deploy"),
        ("/Payments/", "", "Payments"),
        ("GlobalCredentials", "", "GlobalCredentials"),
    ],
)
def test_parent_and_leaf_names(full_name, parent, leaf):
    assert parent_name(full_name) == parent
    assert leaf_name(full_name) == leaf


@pytest.mark.parametrize(
    "class_name, expected",
    [
        ("jenkins.branch.OrganizationFolder", "folder"),
        ("com.cloudbees.hudson.plugins.folder.Folder", "folder"),
        ("org.jenkinsci.plugins.workflow.multibranch.WorkflowMultiBranchProject", "multibranch"),
        ("org.jenkinsci.plugins.workflow.job.WorkflowJob", "pipeline"),
        ("hudson.model.FreeStyleProject", "job"),
        ("", "job"),
    ],
)
def test_infer_job_type(class_name, expected):
    assert infer_job_type(class_name) == expected


def test_job_tree():
    assert job_tree(1) == "name,fullName,url,_class"
    assert job_tree(0) == "name,fullName,url,_class"
    assert job_tree(3) == (
        "name,fullName,url,_class,jobs[name,fullName,url,_class,"
        "jobs[name,fullName,url,_class]]"
    )


def test_safe_name():
    assert safe_name("Jenkins.Example.com:8080") == "jenkins-example-com-8080"


def test_discovery_round_trip(tmp_path):
    original = DiscoveryResult(
        platform="jenkins",
        jenkins_url="https://jenkins.example.com",
        controller="jenkins.example.com",
        controller_slug="jenkins-example-com",
        oidc_issuer="https://jenkins.example.com",
        jwks_uri="https://jenkins.example.com/jwtauth/conjur-jwk-set",
        jobs=[JobInfo(name="deploy", full_name="A/deploy", type="pipeline", class_name="x.WorkflowJob", parent="A")],
        source="api",
        warnings=["w"],
        metadata={"max_depth": "6"},
        discovered_at="2024-01-01T00:00:00Z",
    )
    (tmp_path / "discovery.json").write_text(json.dumps(original.to_dict()), encoding="utf-8")
    loaded = load_discovery(tmp_path)
    assert loaded == original
    assert original.to_dict()["jobs"][0]["class"] == "x.WorkflowJob"


def test_load_discovery_errors(tmp_path):
    with pytest.raises(OnboardError, match="reading"):
        load_discovery(tmp_path)
    (tmp_path / "discovery.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(OnboardError, match="parsing"):
        load_discovery(tmp_path)