"""Jenkins discovery of jobs, folders and credential scopes."""

from __future__ import annotations

import contextlib
import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping
from urllib.parse import quote_plus, urlsplit, urlunsplit

import httpx

from conjuronboard.http_errors import OnboardError

DEFAULT_MAX_DEPTH = 6
DISCOVERY_NAME = "discovery.json"
CONJUR_PLUGIN_SHORT_NAME = "conjur-credentials"

_NON_SAFE_NAME = re.compile(r"[^A-Za-z0-9\-_]")
_JOB_TYPES = ("global", "folder", "multibranch", "pipeline", "job", "scope")


def _s(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"field {key!r} must be a string")
    return value


def _str_map(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping) or any(
        not isinstance(item, str) for item in value.values()
    ):
        raise TypeError(f"field {key!r} must be an object of strings")
    return dict(value)


def _str_list(data: Mapping[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise TypeError(f"field {key!r} must be a list of strings")
    return list(value)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def safe_name(s: str) -> str:
    """Lower-case a name and replace every character outside [A-Za-z0-9-_] with '-'."""
    return _NON_SAFE_NAME.sub("-", s.lower())


def parent_name(full_name: str) -> str:
    """Return the parent path of a Jenkins full name, or "" at the top level."""
    full_name = full_name.strip("/")
    idx = full_name.rfind("/")
    if idx <= 0:
        return ""
    return full_name[:idx]


def leaf_name(full_name: str) -> str:
    """Return the last path segment of a Jenkins full name."""
    full_name = full_name.strip("/")
    return full_name.rpartition("/")[2]


def infer_job_type(class_name: str) -> str:
    """Map a Jenkins item class to a workload scope type."""
    lowered = class_name.lower()
    if "organizationfolder" in lowered or "folder" in lowered:
        return "folder"
    if "workflowmultibranchproject" in lowered:
        return "multibranch"
    if "workflowjob" in lowered:
        return "pipeline"
    return "job"


def job_tree(depth: int) -> str:
    """Return the Jenkins API tree expression for nested jobs down to depth."""
    fields = "name,fullName,url,_class"
    if depth <= 1:
        return fields
    return f"{fields},jobs[{job_tree(depth - 1)}]"


def _infer_type_from_full_name(full_name: str) -> str:
    return "global" if full_name == "GlobalCredentials" else "scope"


def _normalize_job_type(typ: str) -> str:
    typ = typ.strip().lower()
    return typ if typ in _JOB_TYPES else "scope"


def _first_non_empty(*values: str) -> str:
    return next((value for value in values if value.strip()), "")


@dataclass
class DiscoverConfig:
    """Inputs for a Jenkins discovery run."""

    jenkins_url: str = ""
    username: str = ""
    token: str = ""
    jobs_from_file: str = ""
    max_depth: int = 0
    verbose: bool = False


@dataclass
class JobInfo:
    """One Jenkins item that can become a workload scope."""

    name: str = ""
    full_name: str = ""
    url: str = ""
    type: str = ""
    class_name: str = ""
    parent: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobInfo:
        if not isinstance(data, Mapping):
            raise TypeError("job must be a JSON object")
        return cls(
            name=_s(data, "name"),
            full_name=_s(data, "full_name"),
            url=_s(data, "url"),
            type=_s(data, "type"),
            class_name=_s(data, "class"),
            parent=_s(data, "parent"),
            metadata=_str_map(data, "metadata"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "full_name": self.full_name}
        if self.url:
            out["url"] = self.url
        out["type"] = self.type
        if self.class_name:
            out["class"] = self.class_name
        if self.parent:
            out["parent"] = self.parent
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out


@dataclass
class DiscoveryResult:
    """The normalized Jenkins discovery written to discovery.json."""

    platform: str = ""
    jenkins_url: str = ""
    controller: str = ""
    controller_slug: str = ""
    version: str = ""
    plugin_version: str = ""
    oidc_issuer: str = ""
    jwks_uri: str = ""
    jobs: list[JobInfo] = field(default_factory=list)
    source: str = ""
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    discovered_at: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiscoveryResult:
        if not isinstance(data, Mapping):
            raise TypeError("discovery must be a JSON object")
        raw_jobs = data.get("jobs") or []
        if not isinstance(raw_jobs, list):
            raise TypeError("field 'jobs' must be a list")
        return cls(
            platform=_s(data, "platform"),
            jenkins_url=_s(data, "jenkins_url"),
            controller=_s(data, "controller"),
            controller_slug=_s(data, "controller_slug"),
            version=_s(data, "version"),
            plugin_version=_s(data, "plugin_version"),
            oidc_issuer=_s(data, "oidc_issuer"),
            jwks_uri=_s(data, "jwks_uri"),
            jobs=[JobInfo.from_dict(item) for item in raw_jobs],
            source=_s(data, "source"),
            warnings=_str_list(data, "warnings"),
            metadata=_str_map(data, "metadata"),
            discovered_at=_s(data, "discovered_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "platform": self.platform,
            "jenkins_url": self.jenkins_url,
            "controller": self.controller,
            "controller_slug": self.controller_slug,
        }
        if self.version:
            out["version"] = self.version
        if self.plugin_version:
            out["plugin_version"] = self.plugin_version
        out["oidc_issuer"] = self.oidc_issuer
        out["jwks_uri"] = self.jwks_uri
        out["jobs"] = [job.to_dict() for job in self.jobs]
        out["source"] = self.source
        if self.warnings:
            out["warnings"] = list(self.warnings)
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        out["discovered_at"] = self.discovered_at
        return out


def _normalize_jenkins_url(raw: str) -> str:
    raw = raw.strip()
    if not raw:
        raise OnboardError("--url is required")
    try:
        parts = urlsplit(raw)
    except ValueError as exc:
        raise OnboardError(f"parsing Jenkins URL: {exc}") from exc
    if not parts.scheme or not parts.netloc:
        raise OnboardError("Jenkins URL must include scheme and host")
    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


def _controller_name(base_url: str) -> str:
    try:
        netloc = urlsplit(base_url).netloc
    except ValueError:
        return "jenkins"
    host = netloc.rpartition("@")[2]
    return host or "jenkins"


def _sort_jobs(jobs: list[JobInfo]) -> None:
    jobs.sort(key=lambda job: job.full_name)


def load_jobs_file(path: str | os.PathLike[str]) -> list[JobInfo]:
    """Read selected scopes, one "full name|type" per line; # starts a comment."""
    path = os.fspath(path)
    try:
        with open(path, encoding="utf-8") as handle:
            content = handle.read()
    except OSError as exc:
        raise OnboardError(f"reading jobs file {path}: {exc}") from exc

    jobs: list[JobInfo] = []
    for line_no, line in enumerate(content.split("\n"), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        full_name, sep, typ = line.partition("|")
        full_name = full_name.strip()
        typ = typ.strip()
        if not full_name:
            raise OnboardError(f"{path}:{line_no} missing Jenkins full name")
        if not sep or not typ:
            typ = _infer_type_from_full_name(full_name)
        jobs.append(
            JobInfo(
                name=leaf_name(full_name),
                full_name=full_name,
                type=_normalize_job_type(typ),
                parent=parent_name(full_name),
            )
        )
    _sort_jobs(jobs)
    return jobs


def _flatten_jobs(items: Iterable[Any]) -> Iterator[JobInfo]:
    for item in items:
        if not isinstance(item, Mapping):
            raise TypeError("job entry must be a JSON object")
        name = _s(item, "name")
        full_name = _s(item, "fullName") or name
        class_name = _s(item, "_class")
        if full_name:
            yield JobInfo(
                name=_first_non_empty(name, leaf_name(full_name)),
                full_name=full_name,
                url=_s(item, "url"),
                type=infer_job_type(class_name),
                class_name=class_name,
                parent=parent_name(full_name),
            )
        children = item.get("jobs") or []
        if not isinstance(children, list):
            raise TypeError("field 'jobs' must be a list")
        yield from _flatten_jobs(children)


def _auth(config: DiscoverConfig) -> tuple[str, str] | None:
    if config.username and config.token:
        return (config.username, config.token)
    return None


def _fetch_jobs(
    client: httpx.Client, config: DiscoverConfig, base_url: str, max_depth: int
) -> tuple[list[JobInfo], str]:
    api_url = base_url + "/api/json?tree=" + quote_plus(f"jobs[{job_tree(max_depth)}]")
    if config.verbose:
        print(f"  [jenkins] GET {api_url}")
    try:
        response = client.get(api_url, auth=_auth(config))
    except httpx.HTTPError as exc:
        raise OnboardError(f"GET Jenkins jobs: {exc}") from exc

    status = response.status_code
    if status in (401, 403):
        raise OnboardError(
            f"Jenkins API returned HTTP {status} while listing jobs; "
            "provide --username and JENKINS_API_TOKEN with read access"
        )
    if status >= 400:
        raise OnboardError(
            f"Jenkins API returned HTTP {status} while listing jobs: {response.text.strip()}"
        )

    try:
        parsed = json.loads(response.content)
        if not isinstance(parsed, Mapping):
            raise TypeError("expected a JSON object")
        raw_jobs = parsed.get("jobs") or []
        if not isinstance(raw_jobs, list):
            raise TypeError("field 'jobs' must be a list")
        jobs = list(_flatten_jobs(raw_jobs))
    except (ValueError, TypeError) as exc:
        raise OnboardError(f"parsing Jenkins jobs response: {exc}") from exc
    _sort_jobs(jobs)
    return jobs, response.headers.get("X-Jenkins", "")


def _fetch_conjur_plugin_version(
    client: httpx.Client, config: DiscoverConfig, base_url: str
) -> tuple[str, str]:
    """Return (plugin version, warning); exactly one is non-empty."""
    api_url = (
        base_url + "/pluginManager/api/json?depth=1&tree=" + quote_plus("plugins[shortName,version]")
    )
    try:
        response = client.get(api_url, auth=_auth(config))
    except httpx.HTTPError as exc:
        return "", f"could not detect Conjur Jenkins plugin version: {exc}"
    if response.status_code >= 400:
        return "", (
            "could not detect Conjur Jenkins plugin version: "
            f"Jenkins API returned HTTP {response.status_code}"
        )
    try:
        parsed = json.loads(response.content)
        if not isinstance(parsed, Mapping):
            raise TypeError("expected a JSON object")
        plugins = parsed.get("plugins") or []
        if not isinstance(plugins, list):
            raise TypeError("field 'plugins' must be a list")
        entries = [
            (_s(plugin, "shortName"), _s(plugin, "version"))
            for plugin in plugins
            if isinstance(plugin, Mapping)
        ]
    except (ValueError, TypeError) as exc:
        return "", f"could not parse Jenkins plugin discovery response: {exc}"
    for short_name, version in entries:
        if short_name == CONJUR_PLUGIN_SHORT_NAME:
            return version, ""
    return "", "Conjur Jenkins plugin was not found in pluginManager output"


def discover(config: DiscoverConfig, client: httpx.Client | None = None) -> DiscoveryResult:
    """Discover Jenkins scopes from a jobs file or from the Jenkins API."""
    base_url = _normalize_jenkins_url(config.jenkins_url)
    controller = _controller_name(base_url)
    result = DiscoveryResult(
        platform="jenkins",
        jenkins_url=base_url,
        controller=controller,
        controller_slug=safe_name(controller),
        oidc_issuer=base_url,
        jwks_uri=base_url + "/jwtauth/conjur-jwk-set",
        discovered_at=_utc_timestamp(),
    )

    if config.jobs_from_file:
        result.jobs = load_jobs_file(config.jobs_from_file)
        result.source = "jobs-from-file"
        result.metadata["jobs_file"] = config.jobs_from_file
        return result

    max_depth = config.max_depth if config.max_depth > 0 else DEFAULT_MAX_DEPTH
    managed = (
        httpx.Client(timeout=30.0) if client is None else contextlib.nullcontext(client)
    )
    with managed as http:
        jobs, version = _fetch_jobs(http, config, base_url, max_depth)
        result.jobs = jobs
        result.version = version
        result.source = "api"
        result.metadata["max_depth"] = str(max_depth)

        plugin_version, warning = _fetch_conjur_plugin_version(http, config, base_url)
    if plugin_version:
        result.plugin_version = plugin_version
    if warning:
        result.warnings.append(warning)
    return result


def load_discovery(work_dir: str | os.PathLike[str]) -> DiscoveryResult:
    """Read discovery.json from a working directory."""
    path = os.path.join(os.fspath(work_dir), DISCOVERY_NAME)
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OnboardError(f"reading {path}: {exc}") from exc
    try:
        return DiscoveryResult.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise OnboardError(f"parsing {path}: {exc}") from exc