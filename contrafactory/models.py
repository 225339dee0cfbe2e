"""Storage records, filters, errors and identifier/hash helpers."""

from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class StorageError(Exception):
    """Base class for storage errors."""


class NotFoundError(StorageError):
    """The requested record does not exist."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class VersionExistsError(StorageError):
    """The package version has already been published."""

    def __init__(self, message: str = "version already exists") -> None:
        super().__init__(message)


class ImmutableError(StorageError):
    """A published version cannot be changed."""

    def __init__(self, message: str = "version is immutable") -> None:
        super().__init__(message)


@dataclass
class Package:
    """A published package version."""

    id: str = ""
    name: str = ""
    version: str = ""
    chain: str = ""
    builder: str = ""
    compiler_version: str = ""
    compiler_settings: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    owner_id: str = ""
    created_at: str = ""
    versions: list[str] = field(default_factory=list)


@dataclass
class Contract:
    """A contract within a package."""

    id: str = ""
    package_id: str = ""
    name: str = ""
    chain: str = ""
    source_path: str = ""
    license: str = ""
    primary_hash: str = ""
    metadata_hash: str = ""
    created_at: str = ""


@dataclass
class Artifact:
    """A stored artifact such as an ABI or bytecode."""

    id: str = ""
    contract_id: str = ""
    artifact_type: str = ""
    content_hash: str = ""
    size_bytes: int = 0


@dataclass
class Deployment:
    """A recorded on-chain deployment."""

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
    verified_at: str = ""
    verified_on: list[str] = field(default_factory=list)
    created_at: str = ""


@dataclass
class APIKey:
    """An API key record; only the hash of the key is kept."""

    id: str = ""
    name: str = ""
    key_hash: str = ""
    scopes: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    last_used_at: str = ""
    revoked_at: str = ""


@dataclass
class PackageFilter:
    """Filter options for listing packages."""

    query: str = ""
    chain: str = ""
    sort: str = ""
    order: str = ""


@dataclass
class DeploymentFilter:
    """Filter options for listing deployments."""

    chain: str = ""
    chain_id: str = ""
    package: str = ""
    verified: Optional[bool] = None


@dataclass
class PaginationParams:
    """Cursor-based pagination options."""

    limit: int = 0
    cursor: str = ""


@dataclass
class PaginatedResult(Generic[T]):
    """One page of results."""

    data: list[T] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str = ""
    prev_cursor: str = ""


def generate_id() -> str:
    """Return a new random UUID as a string."""
    return str(uuid.uuid4())


def compute_hash(content: bytes) -> str:
    """Return the hex SHA-256 digest of content."""
    return hashlib.sha256(content).hexdigest()


def generate_api_key() -> str:
    """Return a new random API key."""
    return f"cf_key_{secrets.token_hex(24)}"


def hash_api_key(key: str) -> str:
    """Return the stored form of an API key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()