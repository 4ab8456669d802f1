"""GitHub Actions OIDC claim analysis and claim-selection validation."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from conjuronboard.http_errors import OnboardError

DEFAULT_TOKEN_APP_PROPERTY = "repository"
CLAIMS_ANALYSIS_NAME = "claims-analysis.json"

_SUPPORTED_IDENTITY_CLAIMS = frozenset({"repository", "repository_owner", "workflow_ref"})
_SUPPORTED_ENFORCED_CLAIMS = frozenset({"environment", "workflow_ref"})


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise TypeError("expected a list of strings")
    return list(value)


def _str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"field {key!r} must be a string")
    return value


@dataclass
class ClaimSelection:
    """The GitHub claim strategy selected for a JWT authenticator."""

    token_app_property: str = ""
    enforced_claims: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ClaimSelection:
        data = data or {}
        return cls(
            token_app_property=_str(data, "token_app_property"),
            enforced_claims=_str_list(data.get("enforced_claims")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_app_property": self.token_app_property,
            "enforced_claims": list(self.enforced_claims),
        }


@dataclass
class ClaimRecord:
    """One GitHub OIDC claim with its classification."""

    name: str = ""
    example_value: str = ""
    classification: str = ""
    recommended: bool = False
    explanation: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClaimRecord:
        return cls(
            name=_str(data, "name"),
            example_value=_str(data, "example_value"),
            classification=_str(data, "classification"),
            recommended=bool(data.get("recommended", False)),
            explanation=_str(data, "explanation"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.example_value:
            out["example_value"] = self.example_value
        out["classification"] = self.classification
        out["recommended"] = self.recommended
        out["explanation"] = self.explanation
        return out


@dataclass
class ClaimAnalysis:
    """Claims available in a GitHub OIDC token and the selected strategy."""

    platform: str = ""
    mode: str = ""
    repository: str = ""
    recommended: list[str] = field(default_factory=list)
    selected_claims: ClaimSelection = field(default_factory=ClaimSelection)
    available_claims: list[ClaimRecord] = field(default_factory=list)
    security_warnings: list[str] = field(default_factory=list)
    security_notes: list[str] = field(default_factory=list)
    implementation_note: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClaimAnalysis:
        if not isinstance(data, Mapping):
            raise TypeError("claim analysis must be a JSON object")
        raw_claims = data.get("available_claims") or []
        if not isinstance(raw_claims, list) or any(
            not isinstance(item, Mapping) for item in raw_claims
        ):
            raise TypeError("field 'available_claims' must be a list of objects")
        selected = data.get("selected_claims")
        if selected is not None and not isinstance(selected, Mapping):
            raise TypeError("field 'selected_claims' must be an object")
        return cls(
            platform=_str(data, "platform"),
            mode=_str(data, "mode"),
            repository=_str(data, "repository"),
            recommended=_str_list(data.get("recommended")),
            selected_claims=ClaimSelection.from_dict(selected),
            available_claims=[ClaimRecord.from_dict(item) for item in raw_claims],
            security_warnings=_str_list(data.get("security_warnings")),
            security_notes=_str_list(data.get("security_notes")),
            implementation_note=_str(data, "implementation_note"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"platform": self.platform, "mode": self.mode}
        if self.repository:
            out["repository"] = self.repository
        out["recommended"] = list(self.recommended)
        out["selected_claims"] = self.selected_claims.to_dict()
        out["available_claims"] = [claim.to_dict() for claim in self.available_claims]
        if self.security_warnings:
            out["security_warnings"] = list(self.security_warnings)
        if self.security_notes:
            out["security_notes"] = list(self.security_notes)
        if self.implementation_note:
            out["implementation_note"] = self.implementation_note
        return out


def _split_claims(csv: str) -> list[str]:
    if not csv.strip():
        return []
    return csv.split(",")


def _normalize_claims(claims: list[str]) -> list[str]:
    return sorted({claim.strip() for claim in claims if claim.strip()})


def _security_warnings(selection: ClaimSelection) -> list[str]:
    warnings: list[str] = []
    if selection.token_app_property == "repository_owner":
        warnings.append(
            "Selecting repository_owner grants every repository in that owner scope "
            "the same workload identity."
        )
    if selection.token_app_property == "workflow_ref":
        warnings.append(
            "Selecting workflow_ref is precise but brittle because workflow file moves "
            "and branch changes alter the identity."
        )
    warnings.extend(
        "Environment scoping should be validated with a live token before production use."
        for claim in selection.enforced_claims
        if claim == "environment"
    )
    return warnings


def build_default_claim_analysis(discovery: Any) -> ClaimAnalysis:
    """Build the synthetic analysis for the first discovered repository."""
    repos = getattr(discovery, "repos", None) if discovery is not None else None
    repo = repos[0].full_name if repos else ""
    return build_synthetic_claim_analysis(
        repo, "", ClaimSelection(token_app_property=DEFAULT_TOKEN_APP_PROPERTY)
    )


def build_synthetic_claim_analysis(
    repo: str, environment: str, selection: ClaimSelection
) -> ClaimAnalysis:
    """Describe the documented GitHub OIDC claims for a repository."""
    selection = ClaimSelection(
        token_app_property=selection.token_app_property or DEFAULT_TOKEN_APP_PROPERTY,
        enforced_claims=_normalize_claims(selection.enforced_claims),
    )
    owner = repo.split("/", 1)[0] if "/" in repo else ""
    env_value = environment or "production"

    return ClaimAnalysis(
        platform="github",
        mode="synthetic",
        repository=repo,
        recommended=["repository"],
        selected_claims=ClaimSelection(
            token_app_property=selection.token_app_property,
            enforced_claims=list(selection.enforced_claims),
        ),
        available_claims=[
            ClaimRecord(
                name="iss",
                example_value="https://token.actions.githubusercontent.com",
                classification="metadata",
                explanation="Issuer used by Conjur to verify the JWT source.",
            ),
            ClaimRecord(
                name="aud",
                example_value="conjur-cloud",
                classification="scope",
                explanation="Audience expected by the Conjur authenticator.",
            ),
            ClaimRecord(
                name="repository",
                example_value=repo,
                classification="identity-strong",
                recommended=True,
                explanation="Recommended primary identity claim; binds access to one "
                "repository.",
            ),
            ClaimRecord(
                name="repository_owner",
                example_value=owner,
                classification="identity-weak",
                explanation="Too broad by itself because every repository in the owner "
                "scope can share it.",
            ),
            ClaimRecord(
                name="environment",
                example_value=env_value,
                classification="scope",
                explanation="Useful for protected deployment environments when paired "
                "with a compatible identity strategy.",
            ),
            ClaimRecord(
                name="workflow_ref",
                example_value=repo + "/.github/workflows/deploy.yml@refs/heads/main",
                classification="scope",
                explanation="Precise but brittle because workflow file moves and branch "
                "changes alter the claim.",
            ),
            ClaimRecord(
                name="run_id",
                example_value="1234567890",
                classification="ephemeral",
                explanation="Changes every run and should not be used for stable "
                "workload identity.",
            ),
        ],
        security_warnings=_security_warnings(selection),
        security_notes=[
            "Use repository as the default identity claim for GitHub Actions.",
            "Do not use repository_owner by itself unless every repository in the "
            "organization should share the same workload identity.",
            "Environment scoping can improve separation, but it requires a compatible "
            "identity strategy before being enforced.",
        ],
        implementation_note="Live token inspection and interactive claim selection are "
        "planned follow-up work. The MVP generator supports repository as the "
        "token_app_property and no enforced claims.",
    )


def parse_claim_selection(token_app_property: str, enforced_claims_csv: str) -> ClaimSelection:
    """Parse and validate a claim selection from command-line values."""
    selection = ClaimSelection(
        token_app_property=token_app_property.strip() or DEFAULT_TOKEN_APP_PROPERTY,
        enforced_claims=_normalize_claims(_split_claims(enforced_claims_csv)),
    )
    validate_known_claims(selection)
    return selection


def load_claim_analysis(work_dir: str | os.PathLike[str]) -> ClaimAnalysis | None:
    """Read claims-analysis.json from a working directory; None when it does not exist."""
    path = os.path.join(os.fspath(work_dir), CLAIMS_ANALYSIS_NAME)
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OnboardError(f"reading {path}: {exc}") from exc
    try:
        return ClaimAnalysis.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise OnboardError(f"parsing {path}: {exc}") from exc


def validate_known_claims(selection: ClaimSelection) -> None:
    """Raise ValueError when a selected claim is not a known GitHub claim."""
    if selection.token_app_property not in _SUPPORTED_IDENTITY_CLAIMS:
        raise ValueError(
            f"unsupported GitHub token_app_property {json.dumps(selection.token_app_property)}"
        )
    for claim in selection.enforced_claims:
        if claim not in _SUPPORTED_ENFORCED_CLAIMS:
            raise ValueError(f"unsupported GitHub enforced claim {json.dumps(claim)}")


def validate_generator_supported_selection(selection: ClaimSelection) -> None:
    """Raise ValueError unless the generator can produce artifacts for the selection."""
    validate_known_claims(selection)
    if selection.token_app_property != DEFAULT_TOKEN_APP_PROPERTY:
        raise ValueError(
            "GitHub generator currently supports token_app_property "
            f"{json.dumps(DEFAULT_TOKEN_APP_PROPERTY)} only; rerun inspect with "
            "--token-app-property repository"
        )
    if selection.enforced_claims:
        listed = "[" + " ".join(selection.enforced_claims) + "]"
        raise ValueError(
            f"GitHub generator does not yet support enforced claims {listed}; "
            "rerun inspect without --enforced-claims"
        )