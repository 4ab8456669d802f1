# conjuronboard

A library for onboarding CI/CD workloads to Conjur with JWT authenticators.

It has two parts:

- **Discovery.** It reads a GitHub organisation or user account, or a Jenkins
  controller. It records the repositories or jobs it finds, and the OIDC
  issuer and JWKS URI, in a `DiscoveryResult`. The result can be saved as
  `discovery.json` and loaded again.
- **Provisioning.** It loads a generated `api/plan.json` and checks it against
  a Conjur tenant. It then applies the plan in order, logs every call, and can
  roll back what was applied.

## Install

```sh
pip install conjuronboard
```

## Provisioning a plan

Each stage takes a working directory. The directory holds `api/plan.json` and
the request body files that the plan's operations point to.

The Conjur client is any object with these methods, each returning a
`(status, body_bytes)` pair. The `APIClient` protocol in
`conjuronboard.apply` describes them.

- `post(path, content_type, body)`
- `delete(path)`
- `get(path)`

```python
from conjuronboard.plan import load_plan
from conjuronboard.validate import validate_plan
from conjuronboard.apply import apply_plan
from conjuronboard.rollback import rollback

plan = load_plan("onboarding")

checked = validate_plan("onboarding", plan, client)
for warning in checked.warnings:
    print("warning:", warning)

result = apply_plan("onboarding", plan, client)
print(result.authenticator_name, result.workloads_created, result.memberships_added)

# Later, to undo what was applied:
rollback("onboarding", plan, client, confirm=True)
```

### Validation

`validate_plan` first checks that every operation's body file can be read. A
body can be a whole file, or one line of it when the operation sets
`body_line`.

Without `dry_run=True` it then makes two requests to the tenant:

- `GET /api/authenticators`
- `GET /api/authenticators/<name>`

It compares the existing authenticator with the plan's name, type, subtype and
identity path, using the provisioning mode (`bootstrap` or `workloads-only`).
In `workloads-only` mode the authenticator must already exist. In `bootstrap`
mode, an existing authenticator that matches the plan only produces a warning.

### Apply

`apply_plan` runs the operations in order and stops at the first status that
is neither expected nor listed as idempotent. A status in `idempotent_on` is
logged as `no_change`.

It will not run until `validate-log.json` exists. Pass `skip_validate=True` or
`dry_run=True` to run it anyway.

### Rollback

`rollback` needs `confirm=True` unless `dry_run=True` is passed. It reads
`apply-log.json` and walks the entries that changed something, newest first.
For each one it issues a DELETE:

| Applied operation | DELETE issued |
|-------------------|---------------|
| A group membership | The membership |
| A workload policy load | Each workload named in its `workload_ids` metadata |
| An authenticator creation | The authenticator |

The metadata key `rollback_kind` can set the mapping explicitly. HTTP 404
counts as already removed.

### Log files

| Stage      | Log file |
|------------|----------|
| Validation | `validate-log.json` |
| Apply      | `apply-log.json` |
| Rollback   | `rollback-log.json`; also renames the apply log to `apply-log.rolled-back.json` |

### Errors

Failures raise `OnboardError`. HTTP failures reported by Conjur raise its
subclass `ConjurHTTPError`, which carries `status`, `body` and `hint`. Both
are in `conjuronboard.http_errors`.

### Writing files

`conjuronboard.files` has the helpers that write these logs:

- `ensure_work_dir` creates a working directory with a `.gitignore` that keeps
  tokens and logs out of source control.
- `write_json`, `write_text` and `write_file` replace files atomically.

## GitHub discovery

```python
import httpx
from conjuronboard.github_discover import DiscoverConfig, discover

with httpx.Client(timeout=30) as http:
    result = discover(DiscoverConfig(org="acme", token="token"), http)

for repo in result.repos:
    print(repo.full_name, repo.environments)
```

`discover` checks who owns the account:

- For an organisation, it reads the org-level OIDC subject customization.
- If there is no organisation of that name, it falls back to the user account.

It lists every repository, or only those named in `repo_names`. It skips
archived repositories and fetches each remaining repository's environments.

When no client is passed, `discover` opens its own with a 30-second timeout.
`load_discovery(work_dir)` reads `discovery.json` back.

### Claims

`conjuronboard.github_claims` describes the GitHub OIDC claims:

- `build_synthetic_claim_analysis` and `build_default_claim_analysis` describe
  the documented claims.
- `parse_claim_selection` and `validate_known_claims` check a chosen claim
  strategy.
- `validate_generator_supported_selection` accepts only `repository` with no
  enforced claims, and raises `ValueError` for anything else.
- `load_claim_analysis` reads `claims-analysis.json`, and returns `None` when
  the file does not exist.

## Jenkins discovery

```python
from conjuronboard.jenkins_discover import DiscoverConfig, discover

result = discover(DiscoverConfig(
    jenkins_url="https://jenkins.example.com/",
    jobs_from_file="jobs.txt",
))
print(result.oidc_issuer, result.jwks_uri)
```

With `jobs_from_file`, the jobs come from a plain file with one
`Full/Name|type` per line; lines starting with `#` are skipped. Otherwise
they come from the Jenkins JSON API: nested folders are searched down to
`max_depth` (6 by default), and the version of the `conjur-credentials`
plugin is recorded when found. Basic auth is used when both `username` and
`token` are set.

## What this package does not do

- It has no command-line program; every stage is called from Python.
- It has no Conjur HTTP client. You supply one that fits `APIClient`.
- It does not generate plans. It does not turn a discovery into
  authenticators, workloads, integration files (workflows, Jenkinsfiles) or
  next-steps guides.
- It does not filter Jenkins discoveries by pattern or job type.