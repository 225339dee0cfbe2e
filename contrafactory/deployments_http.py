"""WSGI application serving the deployments HTTP API."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Request, Response

from contrafactory.deployments import (
    DeploymentNotFoundError,
    DeploymentService,
    InvalidAddressError,
    InvalidChainIDError,
    ListFilter,
    PackageNotFoundError,
    RecordRequest,
)
from contrafactory.models import PaginationParams
from contrafactory.responses import error_response, json_response

_DEFAULT_LIMIT = 20
_MAX_LIMIT = 100
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def _parse_limit(raw: str) -> int:
    if raw and _INTEGER_RE.fullmatch(raw):
        parsed = int(raw)
        if 0 < parsed <= _MAX_LIMIT:
            return parsed
    return _DEFAULT_LIMIT


class DeploymentsAPI:
    """Routes deployment requests under a path prefix to a deployment service."""

    def __init__(
        self,
        service: DeploymentService,
        prefix: str = "/deployments",
        include_read: bool = True,
        include_write: bool = True,
    ) -> None:
        self.service = service
        self.prefix = prefix.rstrip("/")
        rules: list[Rule] = []
        if include_read:
            rules.append(
                Rule(f"{self.prefix}/", methods=["GET"], endpoint="list", strict_slashes=False)
            )
            rules.append(
                Rule(f"{self.prefix}/<chain_id>/<address>", methods=["GET"], endpoint="get")
            )
        if include_write:
            rules.append(
                Rule(f"{self.prefix}/", methods=["POST"], endpoint="record", strict_slashes=False)
            )
        self._url_map = Map(rules)
        self._handlers: dict[str, Callable[..., Response]] = {
            "list": self._handle_list,
            "get": self._handle_get,
            "record": self._handle_record,
        }

    def __call__(
        self, environ: dict[str, Any], start_response: Callable[..., Any]
    ) -> Iterable[bytes]:
        request = Request(environ)
        adapter = self._url_map.bind_to_environ(environ)
        try:
            endpoint, args = adapter.match()
        except HTTPException as exc:
            return exc(environ, start_response)
        response = self._handlers[endpoint](request, **args)
        return response(environ, start_response)

    def _handle_list(self, request: Request) -> Response:
        args = request.args
        limit = _parse_limit(args.get("limit", ""))
        verified_raw = args.get("verified", "")
        verified = verified_raw == "true" if verified_raw else None

        try:
            result = self.service.list(
                ListFilter(
                    chain=args.get("chain", ""),
                    chain_id=args.get("chain_id", ""),
                    package=args.get("package", ""),
                    verified=verified,
                ),
                PaginationParams(limit=limit, cursor=args.get("cursor", "")),
            )
        except Exception:  # any service failure becomes a 500 at the HTTP boundary
            return error_response(500, "INTERNAL_ERROR", "Failed to list deployments")

        data = [
            {
                "chainId": d.chain_id,
                "address": d.address,
                "contractName": d.contract_name,
                "verified": d.verified,
                "txHash": d.tx_hash,
            }
            for d in result.deployments
        ]
        return json_response(
            200,
            {
                "data": data,
                "pagination": {
                    "limit": limit,
                    "hasMore": result.has_more,
                    "nextCursor": result.next_cursor,
                },
            },
        )

    def _handle_record(self, request: Request) -> Response:
        try:
            body = request.get_data(cache=True)
        except Exception:  # a failing or oversized body stream is a client error
            return error_response(400, "INVALID_REQUEST", "Failed to read request body")

        try:
            decoded = json.loads(body)
            record_request = RecordRequest.from_dict({} if decoded is None else decoded)
        except ValueError:
            return error_response(400, "INVALID_REQUEST", "Invalid JSON")

        try:
            deployment = self.service.record(record_request)
        except PackageNotFoundError:
            return error_response(404, "NOT_FOUND", "Package not found")
        except (InvalidAddressError, InvalidChainIDError) as exc:
            return error_response(400, "INVALID_REQUEST", str(exc))
        except Exception:  # any other service failure becomes a 500
            return error_response(500, "INTERNAL_ERROR", "Failed to record deployment")

        return json_response(
            201,
            {
                "id": deployment.id,
                "chainId": deployment.chain_id,
                "address": deployment.address,
                "verified": deployment.verified,
                "message": "Deployment recorded successfully",
            },
        )

    def _handle_get(self, request: Request, chain_id: str, address: str) -> Response:
        try:
            deployment = self.service.get(chain_id, address)
        except DeploymentNotFoundError:
            return error_response(404, "NOT_FOUND", "Deployment not found")
        except Exception:  # any other service failure becomes a 500
            return error_response(500, "INTERNAL_ERROR", "Failed to get deployment")

        return json_response(
            200,
            {
                "id": deployment.id,
                "packageId": deployment.package_id,
                "chainId": deployment.chain_id,
                "address": deployment.address,
                "contractName": deployment.contract_name,
                "deployerAddress": deployment.deployer_address,
                "txHash": deployment.tx_hash,
                "blockNumber": deployment.block_number,
                "verified": deployment.verified,
                "verifiedOn": list(deployment.verified_on) if deployment.verified_on else None,
                "createdAt": deployment.created_at or _ZERO_TIME,
            },
        )