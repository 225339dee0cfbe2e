"""Deployment records: validation, recording, lookup and listing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence

from contrafactory.models import (
    Deployment,
    DeploymentFilter,
    NotFoundError,
    Package,
    PaginatedResult,
    PaginationParams,
    generate_id,
)
from contrafactory.validation import ValidationError, validate_address, validate_chain_id

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_DEFAULT_CHAIN = "evm"
_PACKAGE_LISTING_LIMIT = 100


class DeploymentError(Exception):
    """Base class for deployment service errors."""


class DeploymentNotFoundError(DeploymentError):
    """The deployment does not exist."""

    def __init__(self, message: str = "deployment not found") -> None:
        super().__init__(message)


class PackageNotFoundError(DeploymentError):
    """The package version the deployment refers to does not exist."""

    def __init__(self, message: str = "package not found") -> None:
        super().__init__(message)


class InvalidAddressError(DeploymentError):
    """The contract address is malformed."""

    def __init__(self, message: str = "invalid address") -> None:
        super().__init__(message)


class InvalidChainIDError(DeploymentError):
    """The chain ID is not acceptable."""

    def __init__(self, message: str = "invalid chain ID") -> None:
        super().__init__(message)


class _PackageReader(Protocol):
    def get_package(self, name: str, version: str) -> Package: ...


class _DeploymentStore(Protocol):
    def record_deployment(self, deployment: Deployment) -> None: ...

    def get_deployment(self, chain: str, chain_id: str, address: str) -> Deployment: ...

    def list_deployments(
        self, deployment_filter: DeploymentFilter, pagination: PaginationParams
    ) -> PaginatedResult[Deployment]: ...

    def update_verification_status(
        self, deployment_id: str, verified: bool, verified_on: Sequence[str]
    ) -> None: ...


@dataclass
class DeploymentRecord:
    """A recorded deployment as seen by callers of the service."""

    id: str = ""
    package_id: str = ""
    contract_name: str = ""
    chain: str = ""
    chain_id: str = ""
    address: str = ""
    deployer_address: str = ""
    tx_hash: str = ""
    block_number: int = 0
    deployment_data: dict[str, Any] = field(default_factory=dict)
    verified: bool = False
    verified_at: Optional[datetime] = None
    verified_on: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None


def _lookup(data: Mapping[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return None


def _string_field(data: Mapping[str, Any], key: str) -> str:
    value = _lookup(data, key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _int_field(data: Mapping[str, Any], key: str) -> int:
    value = _lookup(data, key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _string_map_field(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = _lookup(data, key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{key} must be an object")
    result: dict[str, str] = {}
    for name, item in value.items():
        if not isinstance(item, str):
            raise ValueError(f"{key}.{name} must be a string")
        result[str(name)] = item
    return result


@dataclass
class RecordRequest:
    """A request to record a new deployment."""

    package: str = ""
    version: str = ""
    contract: str = ""
    chain_id: int = 0
    address: str = ""
    tx_hash: str = ""
    deployer_address: str = ""
    block_number: int = 0
    constructor_args: str = ""
    libraries: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecordRequest":
        """Build a request from decoded JSON, raising ValueError on wrong types."""
        if not isinstance(data, Mapping):
            raise ValueError("request must be a JSON object")
        return cls(
            package=_string_field(data, "package"),
            version=_string_field(data, "version"),
            contract=_string_field(data, "contract"),
            chain_id=_int_field(data, "chainId"),
            address=_string_field(data, "address"),
            tx_hash=_string_field(data, "txHash"),
            deployer_address=_string_field(data, "deployerAddress"),
            block_number=_int_field(data, "blockNumber"),
            constructor_args=_string_field(data, "constructorArgs"),
            libraries=_string_map_field(data, "libraries"),
        )


@dataclass
class ListFilter:
    """Filter options for listing deployments."""

    chain: str = ""
    chain_id: str = ""
    package: str = ""
    verified: Optional[bool] = None


@dataclass
class ListResult:
    """One page of deployments."""

    deployments: list[DeploymentRecord] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str = ""
    prev_cursor: str = ""


@dataclass
class DeploymentSummary:
    """A lightweight view of a deployment."""

    chain_id: str = ""
    address: str = ""
    contract_name: str = ""
    verified: bool = False
    tx_hash: str = ""


def _parse_timestamp(text: str) -> Optional[datetime]:
    if not text:
        return None
    try:
        return datetime.strptime(text, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def to_deployment(record: Deployment) -> DeploymentRecord:
    """Convert a stored deployment; an unparsable creation time becomes None."""
    return DeploymentRecord(
        id=record.id,
        package_id=record.package_id,
        contract_name=record.contract_name,
        chain=record.chain,
        chain_id=record.chain_id,
        address=record.address,
        deployer_address=record.deployer_address,
        tx_hash=record.tx_hash,
        block_number=record.block_number,
        deployment_data=record.deployment_data,
        verified=record.verified,
        verified_on=record.verified_on,
        created_at=_parse_timestamp(record.created_at),
    )


class DeploymentService:
    """Records and looks up deployments of published packages."""

    def __init__(self, packages: _PackageReader, deployments: _DeploymentStore) -> None:
        self.packages = packages
        self.deployments = deployments

    def _get_package(self, name: str, version: str) -> Package:
        try:
            return self.packages.get_package(name, version)
        except NotFoundError as exc:
            raise PackageNotFoundError() from exc

    def _get_stored(self, chain_id: str, address: str) -> Deployment:
        try:
            return self.deployments.get_deployment(_DEFAULT_CHAIN, chain_id, address)
        except NotFoundError as exc:
            raise DeploymentNotFoundError() from exc

    def record(self, request: RecordRequest) -> DeploymentRecord:
        """Validate and store a new deployment."""
        try:
            validate_address(request.address)
        except ValidationError as exc:
            raise InvalidAddressError(f"invalid address: {exc}") from exc
        try:
            validate_chain_id(request.chain_id)
        except ValidationError as exc:
            raise InvalidChainIDError(f"invalid chain ID: {exc}") from exc

        package = self._get_package(request.package, request.version)

        deployment_data: dict[str, Any] = {}
        if request.constructor_args:
            deployment_data["constructorArgs"] = request.constructor_args
        if request.libraries:
            deployment_data["libraries"] = dict(request.libraries)

        deployment = Deployment(
            id=generate_id(),
            package_id=package.id,
            contract_name=request.contract,
            chain=package.chain,
            chain_id=str(request.chain_id),
            address=request.address,
            deployer_address=request.deployer_address,
            tx_hash=request.tx_hash,
            block_number=request.block_number,
            deployment_data=deployment_data,
            verified=False,
        )
        self.deployments.record_deployment(deployment)
        return to_deployment(deployment)

    def get(self, chain_id: str, address: str) -> DeploymentRecord:
        """Return a deployment, raising DeploymentNotFoundError if absent."""
        return to_deployment(self._get_stored(chain_id, address))

    def list(self, list_filter: ListFilter, pagination: PaginationParams) -> ListResult:
        """Return one page of deployments."""
        result = self.deployments.list_deployments(
            DeploymentFilter(
                chain=list_filter.chain,
                chain_id=list_filter.chain_id,
                package=list_filter.package,
                verified=list_filter.verified,
            ),
            PaginationParams(limit=pagination.limit, cursor=pagination.cursor),
        )
        return ListResult(
            deployments=[to_deployment(d) for d in result.data],
            has_more=result.has_more,
            next_cursor=result.next_cursor,
            prev_cursor=result.prev_cursor,
        )

    def update_verification_status(
        self, chain_id: str, address: str, verified: bool, verified_on: Sequence[str]
    ) -> None:
        """Set the verification status of a deployment."""
        deployment = self._get_stored(chain_id, address)
        self.deployments.update_verification_status(deployment.id, verified, list(verified_on))

    def list_by_package(self, package_name: str, version: str) -> list[DeploymentSummary]:
        """Return summaries of the deployments of one package version."""
        package = self._get_package(package_name, version)
        result = self.deployments.list_deployments(
            DeploymentFilter(package=package_name),
            PaginationParams(limit=_PACKAGE_LISTING_LIMIT),
        )
        return [
            DeploymentSummary(
                chain_id=d.chain_id,
                address=d.address,
                contract_name=d.contract_name,
                verified=d.verified,
                tx_hash=d.tx_hash,
            )
            for d in result.data
            if d.package_id == package.id
        ]