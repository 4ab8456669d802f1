"""GitHub API discovery of an organization's repositories and OIDC settings."""

from __future__ import annotations

import contextlib
import json
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

from conjuronboard.http_errors import OnboardError

GITHUB_API_BASE = "https://api.github.com"
PAGE_SIZE = 100
GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
GITHUB_JWKS_URI = "https://token.actions.githubusercontent.com/.well-known/jwks"
DISCOVERY_NAME = "discovery.json"


def _s(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"field {key!r} must be a string")
    return value


def _i(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"field {key!r} must be an integer")
    return value


def _b(data: Mapping[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise TypeError(f"field {key!r} must be a boolean")
    return value


def _sl(data: Mapping[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise TypeError(f"field {key!r} must be a list of strings")
    return list(value)


def _obj(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _quoted(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


@dataclass
class DiscoverConfig:
    """Inputs for a discovery run."""

    org: str = ""
    token: str = ""
    repo_names: list[str] = field(default_factory=list)
    verbose: bool = False


@dataclass
class OrgInfo:
    """Organization or user metadata relevant to discovery and review."""

    id: int = 0
    login: str = ""
    name: str = ""
    account_type: str = ""
    authenticated: bool = False
    node_id: str = ""
    public_repos: int = 0
    plan_name: str = ""
    plan_space: int = 0
    private_repos: int = 0
    enterprise: str = ""
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> OrgInfo:
        data = _obj(data)
        return cls(
            id=_i(data, "id"),
            login=_s(data, "login"),
            name=_s(data, "name"),
            account_type=_s(data, "account_type"),
            authenticated=_b(data, "authenticated"),
            node_id=_s(data, "node_id"),
            public_repos=_i(data, "public_repos"),
            plan_name=_s(data, "plan_name"),
            plan_space=_i(data, "plan_space"),
            private_repos=_i(data, "private_repos"),
            enterprise=_s(data, "enterprise"),
            warnings=_sl(data, "warnings"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "login": self.login}
        optional: list[tuple[str, Any]] = [
            ("name", self.name),
            ("account_type", self.account_type),
            ("authenticated", self.authenticated),
            ("node_id", self.node_id),
            ("public_repos", self.public_repos),
            ("plan_name", self.plan_name),
            ("plan_space", self.plan_space),
            ("private_repos", self.private_repos),
            ("enterprise", self.enterprise),
            ("warnings", list(self.warnings)),
        ]
        out.update((key, value) for key, value in optional if value)
        return out


@dataclass
class RepoInfo:
    """Per-repository metadata relevant to onboarding."""

    name: str = ""
    full_name: str = ""
    default_branch: str = ""
    visibility: str = ""
    environments: list[str] = field(default_factory=list)
    archived: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RepoInfo:
        data = _obj(data)
        return cls(
            name=_s(data, "name"),
            full_name=_s(data, "full_name"),
            default_branch=_s(data, "default_branch"),
            visibility=_s(data, "visibility"),
            environments=_sl(data, "environments"),
            archived=_b(data, "archived"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "full_name": self.full_name,
            "default_branch": self.default_branch,
            "visibility": self.visibility,
            "environments": list(self.environments),
            "archived": self.archived,
        }


@dataclass
class OIDCSubCustomization:
    """GitHub Actions OIDC subject customization found for an org."""

    detected: bool = False
    include_claim_keys: list[str] = field(default_factory=list)
    warning: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> OIDCSubCustomization:
        data = _obj(data)
        return cls(
            detected=_b(data, "detected"),
            include_claim_keys=_sl(data, "include_claim_keys"),
            warning=_s(data, "warning"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"detected": self.detected}
        if self.include_claim_keys:
            out["include_claim_keys"] = list(self.include_claim_keys)
        if self.warning:
            out["warning"] = self.warning
        return out


@dataclass
class DiscoveryResult:
    """The normalized output written to discovery.json."""

    platform: str = ""
    org: str = ""
    org_info: OrgInfo = field(default_factory=OrgInfo)
    oidc_issuer: str = ""
    jwks_uri: str = ""
    repos: list[RepoInfo] = field(default_factory=list)
    sub_claim_customized: bool = False
    oidc_sub_customization: OIDCSubCustomization = field(default_factory=OIDCSubCustomization)
    warnings: list[str] = field(default_factory=list)
    discovered_at: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiscoveryResult:
        if not isinstance(data, Mapping):
            raise TypeError("discovery must be a JSON object")
        raw_repos = data.get("repos") or []
        if not isinstance(raw_repos, list):
            raise TypeError("field 'repos' must be a list")
        return cls(
            platform=_s(data, "platform"),
            org=_s(data, "org"),
            org_info=OrgInfo.from_dict(data.get("org_info")),
            oidc_issuer=_s(data, "oidc_issuer"),
            jwks_uri=_s(data, "jwks_uri"),
            repos=[RepoInfo.from_dict(item) for item in raw_repos],
            sub_claim_customized=_b(data, "sub_claim_customized"),
            oidc_sub_customization=OIDCSubCustomization.from_dict(
                data.get("oidc_sub_customization")
            ),
            warnings=_sl(data, "warnings"),
            discovered_at=_s(data, "discovered_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "platform": self.platform,
            "org": self.org,
            "org_info": self.org_info.to_dict(),
            "oidc_issuer": self.oidc_issuer,
            "jwks_uri": self.jwks_uri,
            "repos": [repo.to_dict() for repo in self.repos],
            "sub_claim_customized": self.sub_claim_customized,
            "oidc_sub_customization": self.oidc_sub_customization.to_dict(),
        }
        if self.warnings:
            out["warnings"] = list(self.warnings)
        out["discovered_at"] = self.discovered_at
        return out


def _verbose(config: DiscoverConfig, message: str) -> None:
    if config.verbose:
        print(message, file=sys.stderr)


def _get_json(
    client: httpx.Client, config: DiscoverConfig, url: str
) -> tuple[httpx.Response, Any]:
    """GET url; decode the JSON body only for 2xx responses."""
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    if config.token:
        headers["Authorization"] = "Bearer " + config.token
    _verbose(config, f"  [github] GET {url}")
    try:
        response = client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise OnboardError(f"GET {url}: {exc}") from exc
    if not 200 <= response.status_code < 300:
        return response, None
    try:
        return response, response.json()
    except ValueError as exc:
        raise OnboardError(f"decoding {url} response: {exc}") from exc


def parse_scopes(raw: str) -> list[str]:
    """Split an X-OAuth-Scopes header into a sorted list of scopes."""
    return sorted(scope.strip() for scope in raw.split(",") if scope.strip())


def missing_scopes(current: list[str], required: list[str]) -> list[str]:
    """Return the required scopes not present in current, in required order."""
    have = set(current)
    return [scope for scope in required if scope not in have]


def _auth_error(response: httpx.Response, *required: str) -> OnboardError:
    current = parse_scopes(response.headers.get("X-OAuth-Scopes", ""))
    missing = missing_scopes(current, list(required))
    wanted = ",".join(required)
    if not current:
        return OnboardError(
            f"GitHub token is missing required access for {wanted}; "
            f"run: gh auth refresh -s {wanted}"
        )
    if missing:
        return OnboardError(
            f"GitHub token scopes are missing {','.join(missing)} "
            f"(current scopes: {','.join(current)}). Run: gh auth refresh -s {wanted}"
        )
    return OnboardError(
        f"GitHub API returned {response.status_code} despite required scopes {wanted}; "
        "verify org access and token permissions"
    )


def normalize_repo_name(org: str, repo: str) -> str:
    """Qualify a bare repository name with the org."""
    repo = repo.strip()
    if "/" in repo:
        return repo
    return f"{org}/{repo}"


def _repo_from_response(data: Any) -> RepoInfo:
    data = _obj(data)
    return RepoInfo(
        name=_s(data, "name"),
        full_name=_s(data, "full_name"),
        default_branch=_s(data, "default_branch"),
        visibility=_s(data, "visibility"),
        archived=_b(data, "archived"),
    )


def _is_auth_status(status: int) -> bool:
    return status in (401, 403)


def get_org_info(client: httpx.Client, config: DiscoverConfig) -> OrgInfo:
    """Fetch org metadata, falling back to user metadata when the org is not found."""
    url = f"{GITHUB_API_BASE}/orgs/{config.org}"
    response, body = _get_json(client, config, url)
    status = response.status_code
    if _is_auth_status(status):
        raise _auth_error(response, "read:org")
    if status == 404:
        return _get_user_info(client, config)
    if status != 200:
        raise OnboardError(f"GitHub API returned {status} for org metadata")

    body = _obj(body)
    plan = _obj(body.get("plan"))
    enterprise = _obj(body.get("enterprise"))
    return OrgInfo(
        id=_i(body, "id"),
        login=_s(body, "login"),
        name=_s(body, "name"),
        account_type="Organization",
        node_id=_s(body, "node_id"),
        plan_name=_s(plan, "name"),
        plan_space=_i(plan, "space"),
        private_repos=_i(body, "total_private_repos"),
        enterprise=_s(enterprise, "slug") or _s(enterprise, "name"),
    )


def _get_user_info(client: httpx.Client, config: DiscoverConfig) -> OrgInfo:
    url = f"{GITHUB_API_BASE}/users/{config.org}"
    response, body = _get_json(client, config, url)
    status = response.status_code
    if _is_auth_status(status):
        raise _auth_error(response, "repo")
    if status == 404:
        raise OnboardError(
            f"GitHub owner {_quoted(config.org)} was not found or is not visible to the token"
        )
    if status != 200:
        raise OnboardError(f"GitHub API returned {status} for owner metadata")

    body = _obj(body)
    login = _s(body, "login")
    authenticated_login = _get_authenticated_user_login(client, config)
    return OrgInfo(
        id=_i(body, "id"),
        login=login,
        name=_s(body, "name"),
        account_type=_s(body, "type") or "User",
        authenticated=login.casefold() == authenticated_login.casefold(),
        node_id=_s(body, "node_id"),
        public_repos=_i(body, "public_repos"),
    )


def _get_authenticated_user_login(client: httpx.Client, config: DiscoverConfig) -> str:
    if not config.token:
        return ""
    response, body = _get_json(client, config, GITHUB_API_BASE + "/user")
    status = response.status_code
    if _is_auth_status(status):
        raise _auth_error(response, "repo")
    if status != 200:
        raise OnboardError(
            f"GitHub API returned {status} for authenticated user metadata"
        )
    return _s(_obj(body), "login")


def _get_oidc_sub_customization(
    client: httpx.Client, config: DiscoverConfig
) -> OIDCSubCustomization:
    url = f"{GITHUB_API_BASE}/orgs/{config.org}/actions/oidc/customization/sub"
    response, body = _get_json(client, config, url)
    status = response.status_code
    if _is_auth_status(status):
        raise _auth_error(response, "read:org")
    if status == 404:
        return OIDCSubCustomization(
            detected=False,
            warning="OIDC subject customization endpoint returned 404; "
            "org-level customization could not be detected",
        )
    if status != 200:
        raise OnboardError(
            f"GitHub API returned {status} for org OIDC subject customization"
        )
    keys = sorted(_sl(_obj(body), "include_claim_keys"))
    return OIDCSubCustomization(detected=bool(keys), include_claim_keys=keys)


def _get_selected_repos(client: httpx.Client, config: DiscoverConfig) -> list[RepoInfo]:
    repos: list[RepoInfo] = []
    for repo_name in config.repo_names:
        full_name = normalize_repo_name(config.org, repo_name)
        response, body = _get_json(client, config, f"{GITHUB_API_BASE}/repos/{full_name}")
        status = response.status_code
        if _is_auth_status(status):
            raise _auth_error(response, "repo")
        if status == 404:
            raise OnboardError(
                f"repository {_quoted(full_name)} was not found or is not visible to the token"
            )
        if status != 200:
            raise OnboardError(f"GitHub API returned {status} for repository {full_name}")
        repos.append(_repo_from_response(body))
    return repos


def list_repos(
    client: httpx.Client, config: DiscoverConfig, org_info: OrgInfo
) -> list[RepoInfo]:
    """Fetch every repository visible to the token for the owner."""
    repos: list[RepoInfo] = []
    page = 1
    while True:
        if org_info.account_type != "Organization" and org_info.authenticated:
            url = (
                f"{GITHUB_API_BASE}/user/repos?visibility=all&affiliation=owner"
                f"&per_page={PAGE_SIZE}&page={page}"
            )
        elif org_info.account_type != "Organization":
            url = (
                f"{GITHUB_API_BASE}/users/{config.org}/repos?type=owner"
                f"&per_page={PAGE_SIZE}&page={page}"
            )
        else:
            url = (
                f"{GITHUB_API_BASE}/orgs/{config.org}/repos?type=all"
                f"&per_page={PAGE_SIZE}&page={page}"
            )

        response, body = _get_json(client, config, url)
        status = response.status_code
        if _is_auth_status(status):
            raise _auth_error(response, "repo")
        if status == 404:
            raise OnboardError(
                f"GitHub owner {_quoted(config.org)} was not found or repositories "
                "are not visible to the token"
            )
        if status != 200:
            raise OnboardError(f"GitHub API returned {status} for org repos")

        page_repos = body if isinstance(body, list) else []
        if not page_repos:
            break
        repos.extend(_repo_from_response(item) for item in page_repos)
        if len(page_repos) < PAGE_SIZE:
            break
        page += 1
    return repos


def _list_environments(
    client: httpx.Client, config: DiscoverConfig, full_name: str
) -> list[str]:
    names: list[str] = []
    page = 1
    while True:
        url = (
            f"{GITHUB_API_BASE}/repos/{full_name}/environments"
            f"?per_page={PAGE_SIZE}&page={page}"
        )
        response, body = _get_json(client, config, url)
        status = response.status_code
        if status == 404:
            return []
        if _is_auth_status(status):
            raise _auth_error(response, "repo")
        if status != 200:
            raise OnboardError(f"environments API returned {status}")

        environments = _obj(body).get("environments") or []
        if not isinstance(environments, list):
            environments = []
        names.extend(_s(_obj(env), "name") for env in environments)
        if len(environments) < PAGE_SIZE:
            break
        page += 1
    return sorted(names)


def _discover_repos(
    client: httpx.Client, config: DiscoverConfig, org_info: OrgInfo
) -> list[RepoInfo]:
    if config.repo_names:
        return _get_selected_repos(client, config)
    return list_repos(client, config, org_info)


def _run_discovery(client: httpx.Client, config: DiscoverConfig) -> DiscoveryResult:
    try:
        org_info = get_org_info(client, config)
    except OnboardError as exc:
        raise OnboardError(f"getting org metadata: {exc}") from exc

    if org_info.account_type == "Organization":
        try:
            customization = _get_oidc_sub_customization(client, config)
        except OnboardError as exc:
            raise OnboardError(f"getting OIDC subject customization: {exc}") from exc
    else:
        customization = OIDCSubCustomization(
            warning=f"GitHub owner {_quoted(config.org)} is a "
            f"{org_info.account_type.lower()} account; org-level OIDC subject "
            "customization was not checked"
        )

    try:
        repos = _discover_repos(client, config, org_info)
    except OnboardError as exc:
        raise OnboardError(f"listing repos: {exc}") from exc

    enriched: list[RepoInfo] = []
    warnings: list[str] = []
    for repo in repos:
        if repo.archived:
            continue
        try:
            envs = _list_environments(client, config, repo.full_name)
        except OnboardError as exc:
            envs = []
            warning = f"could not fetch environments for {repo.full_name}: {exc}"
            warnings.append(warning)
            _verbose(config, f"  warn: {warning}")
        repo.environments = envs
        enriched.append(repo)
        _verbose(
            config,
            f"  discovered repo: {repo.full_name} (environments: [{' '.join(envs)}])",
        )

    if customization.warning:
        warnings.append(customization.warning)

    return DiscoveryResult(
        platform="github",
        org=config.org,
        org_info=org_info,
        oidc_issuer=GITHUB_OIDC_ISSUER,
        jwks_uri=GITHUB_JWKS_URI,
        repos=enriched,
        sub_claim_customized=customization.detected,
        oidc_sub_customization=customization,
        warnings=warnings,
        discovered_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )


def discover(config: DiscoverConfig, client: httpx.Client | None = None) -> DiscoveryResult:
    """Enumerate repositories and OIDC configuration for a GitHub owner."""
    managed = (
        httpx.Client(timeout=30.0) if client is None else contextlib.nullcontext(client)
    )
    with managed as http:
        return _run_discovery(http, config)


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