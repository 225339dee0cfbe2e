# contrafactory

Building blocks for a registry of smart-contract packages and their on-chain
deployments: SQLite-backed storage, input validation, a deployments service with a
JSON HTTP API (a WSGI application), and WSGI middleware for running that API on the
open internet.

## Installation

```
pip install contrafactory
```

The only runtime dependency is `werkzeug`.

## Modules

- `contrafactory.models`: the records `Package`, `Contract`, `Artifact`, `Deployment`
  and `APIKey`; `PackageFilter`, `DeploymentFilter`, `PaginationParams` and
  `PaginatedResult`; the errors `StorageError`, `NotFoundError`, `VersionExistsError`
  and `ImmutableError`; and the helpers `generate_id()`, `compute_hash(content)`
  (hex SHA-256), `generate_api_key()` (keys look like `cf_key_` followed by 48 hex
  digits) and `hash_api_key(key)`.
- `contrafactory.validation`: `validate_package_name`, `validate_version`,
  `normalize_version`, `is_prerelease`, `compare_versions`, `resolve_latest`,
  `validate_address` and `validate_chain_id`. The `validate_*` functions return
  nothing and raise `ValidationError` (a `ValueError`) on bad input.
  `resolve_latest` prefers stable versions, falls back to prereleases when there are
  no stable ones, and returns `""` for an empty list.
- `contrafactory.sqlite_store`: `SQLiteStore(path)`, a SQLite database (WAL mode,
  foreign keys on) for packages, package owners, contracts, artifacts, deployments
  and API keys. It creates the parent directory of `path`, works as a context manager,
  and needs `migrate()` to create its tables. Lookups raise `NotFoundError` when
  nothing matches. Only the SHA-256 hash of an API key is stored; `create_api_key`
  returns the key itself once.
- `contrafactory.deployments`: `DeploymentService(packages, deployments)`, which
  validates and records deployments (`record`), and offers `get`, `list`,
  `update_verification_status` and `list_by_package`. Its errors are
  `DeploymentNotFoundError`, `PackageNotFoundError`, `InvalidAddressError` and
  `InvalidChainIDError`, all subclasses of `DeploymentError`. `RecordRequest.from_dict`
  builds a request from decoded JSON with camel-case keys (`chainId`, `txHash`, …).
- `contrafactory.deployments_http`: `DeploymentsAPI(service, prefix, include_read,
  include_write)`, a WSGI application serving `GET {prefix}/` (query parameters
  `limit` (1–100, default 20), `cursor`, `chain`, `chain_id`, `package`, `verified`),
  `GET {prefix}/{chainId}/{address}` and `POST {prefix}/`.
- `contrafactory.responses`: `json_response(status, data)`,
  `error_response(status, code, message)` and `health_response()`, returning
  werkzeug `Response` objects.
- `contrafactory.realip`: `RealIPMiddleware` with `RealIPConfig`. When
  `trust_proxy` is on and the peer lies in `trusted_proxies` (CIDRs or single
  addresses), the client IP is taken from `X-Forwarded-For` (the rightmost untrusted
  hop) or, failing that, `X-Real-IP`. `get_client_ip(environ)` reads the result.
- `contrafactory.security`: `SecurityFilterMiddleware(app, enabled)` answers 400 to
  well-known scanner paths (`/wp-admin`, `/.git/`, `/.env`, …) and path-traversal
  patterns, case-insensitively, while letting `/health`, `/healthz` and `/readyz`
  through. `MaxBodySizeMiddleware(app, max_size_mb)` wraps the request body in a
  `MaxBytesReader` that raises `BodyTooLargeError` once the limit is passed.
  `is_blocked_path(path, raw_path)` exposes the filter rule.
- `contrafactory.ratelimit`: `RateLimiter` keeps a `TokenBucket` per client IP and
  drops idle ones in a background thread (`stop()` ends it). Its `middleware(app)`
  answers 429 with `Retry-After: 60`, skipping health-check paths.
  `rate_limit_middleware(app, config)` returns `app` unchanged when
  `RateLimitConfig.enabled` is false.
- `contrafactory.logging_middleware`: `RequestIDMiddleware` gives each request an ID
  (reusing an incoming `X-Request-Id`), readable with `get_request_id(environ)`.
  `RequestLoggingMiddleware(app, logger)` logs one record per request with method,
  path, status, bytes, duration, client IP and request ID, also passed as `extra`
  fields on the log record.

Errors from the HTTP API and middleware come back as JSON in the form
`{"error": {"code": "NOT_FOUND", "message": "Deployment not found"}}`.

## Example

```python
import logging
from wsgiref.simple_server import make_server

from contrafactory.sqlite_store import SQLiteStore
from contrafactory.deployments import DeploymentService
from contrafactory.deployments_http import DeploymentsAPI
from contrafactory.realip import RealIPConfig, RealIPMiddleware
from contrafactory.security import SecurityFilterMiddleware, MaxBodySizeMiddleware
from contrafactory.ratelimit import RateLimitConfig, rate_limit_middleware
from contrafactory.logging_middleware import RequestIDMiddleware, RequestLoggingMiddleware

store = SQLiteStore("data/contrafactory.db")
store.migrate()

service = DeploymentService(store, store)
app = DeploymentsAPI(service, "/api/v1/deployments", True, True)

logger = logging.getLogger("contrafactory")
app = RequestLoggingMiddleware(app, logger)
app = RequestIDMiddleware(app)
app = rate_limit_middleware(app, RateLimitConfig(enabled=True, requests_per_min=60, burst_size=10))
app = MaxBodySizeMiddleware(app, 10)
app = SecurityFilterMiddleware(app, True)
app = RealIPMiddleware(app, RealIPConfig(trust_proxy=False))

make_server("127.0.0.1", 8080, app).serve_forever()
```

## What it does not do

- There is no command and no ready-made server: you assemble the WSGI stack yourself
  and run it under a WSGI server of your choice, as above.
- The only HTTP API is the deployments one. There are no endpoints for publishing,
  browsing or deleting packages, for contract verification, or for health checks
  (`health_response()` builds the body, but nothing routes to it).
- There is no authentication middleware; `DeploymentsAPI` can leave out its write
  route (`include_write=False`), but does not check API keys itself.
- Storage is SQLite only. `list_deployments` ignores its filter and cursor,
  `record_deployment` does not store `deployment_data`, and
  `update_verification_status` does not store the list of verifiers.
- `DeploymentService.get` and `update_verification_status` look deployments up on the
  `evm` chain only.

## Running the tests

```
pip install -e ".[test]"
pytest
```