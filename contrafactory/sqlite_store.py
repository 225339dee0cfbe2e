"""SQLite-backed storage for packages, contracts, artifacts, deployments and API keys."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence, Union

from contrafactory.models import (
    APIKey,
    Contract,
    Deployment,
    DeploymentFilter,
    NotFoundError,
    Package,
    PackageFilter,
    PaginatedResult,
    PaginationParams,
    StorageError,
    compute_hash,
    generate_api_key,
    generate_id,
    hash_api_key,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
-- Package ownership
CREATE TABLE IF NOT EXISTS package_owners (
    id TEXT PRIMARY KEY,
    package_name TEXT NOT NULL UNIQUE,
    owner_key_id TEXT REFERENCES api_keys(id),
    created_at TEXT DEFAULT (datetime('now'))
);

-- Packages
CREATE TABLE IF NOT EXISTS packages (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    chain TEXT NOT NULL,
    builder TEXT,
    compiler_version TEXT,
    compiler_settings TEXT,
    metadata TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(name, version)
);

-- Contracts
CREATE TABLE IF NOT EXISTS contracts (
    id TEXT PRIMARY KEY,
    package_id TEXT REFERENCES packages(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    chain TEXT NOT NULL,
    source_path TEXT NOT NULL,
    license TEXT,
    primary_hash TEXT NOT NULL,
    metadata_hash TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(package_id, name, source_path)
);

-- Artifacts
CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    contract_id TEXT REFERENCES contracts(id) ON DELETE CASCADE,
    artifact_type TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    content BLOB,
    blob_store_ref TEXT,
    size_bytes INTEGER NOT NULL,
    UNIQUE(contract_id, artifact_type)
);

-- Deployments
CREATE TABLE IF NOT EXISTS deployments (
    id TEXT PRIMARY KEY,
    package_id TEXT REFERENCES packages(id),
    contract_name TEXT NOT NULL,
    chain TEXT NOT NULL,
    chain_id TEXT NOT NULL,
    address TEXT NOT NULL,
    deployer_address TEXT,
    tx_hash TEXT,
    block_number INTEGER,
    deployment_data TEXT,
    verified INTEGER DEFAULT 0,
    verified_at TEXT,
    verified_on TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(chain, chain_id, address)
);

-- API keys
CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    key_hash TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    scopes TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    last_used_at TEXT,
    revoked_at TEXT
);

-- Blobs
CREATE TABLE IF NOT EXISTS blobs (
    hash TEXT PRIMARY KEY,
    content BLOB NOT NULL,
    size_bytes INTEGER NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_packages_name ON packages(name);
CREATE INDEX IF NOT EXISTS idx_packages_chain ON packages(chain);
CREATE INDEX IF NOT EXISTS idx_contracts_primary_hash ON contracts(primary_hash);
CREATE INDEX IF NOT EXISTS idx_deployments_lookup ON deployments(chain, chain_id, address);
CREATE INDEX IF NOT EXISTS idx_artifacts_content_hash ON artifacts(content_hash);
"""

_CONTRACT_COLUMNS = (
    "id, package_id, name, chain, source_path, license, primary_hash, metadata_hash, created_at"
)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _contract_from_row(row: Sequence[Any]) -> Contract:
    return Contract(
        id=_text(row[0]),
        package_id=_text(row[1]),
        name=_text(row[2]),
        chain=_text(row[3]),
        source_path=_text(row[4]),
        license=_text(row[5]),
        primary_hash=_text(row[6]),
        metadata_hash=_text(row[7]),
        created_at=_text(row[8]),
    )


def _decode_metadata(raw: Optional[str]) -> dict[str, str]:
    if not raw or raw == "{}":
        return {}
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        logger.warning("failed to deserialize metadata: %s", exc)
        return {}
    if not isinstance(decoded, dict) or not all(isinstance(v, str) for v in decoded.values()):
        logger.warning("failed to deserialize metadata: not a string map")
        return {}
    return decoded


class SQLiteStore:
    """A store kept in a single SQLite database file."""

    def __init__(self, path: Union[str, Path]) -> None:
        db_path = Path(path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"creating data directory: {exc}") from exc
        try:
            self._conn = sqlite3.connect(
                str(db_path), check_same_thread=False, isolation_level=None
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as exc:
            raise StorageError(f"opening database: {exc}") from exc
        self._lock = threading.Lock()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _execute(self, query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, tuple(params))

    def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        with self._lock:
            return self._conn.execute(query, tuple(params)).fetchone()

    def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> list[tuple]:
        with self._lock:
            return self._conn.execute(query, tuple(params)).fetchall()

    def _rows(self, query: str, params: Sequence[Any] = ()) -> Iterator[tuple]:
        yield from self._fetch_all(query, params)

    def migrate(self) -> None:
        """Create tables and indexes that do not exist yet."""
        try:
            with self._lock:
                self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(f"running migrations: {exc}") from exc
        logger.info("database migrations complete")

    # Packages

    def create_package(self, package: Package) -> None:
        """Insert a package version."""
        metadata_json = json.dumps(package.metadata) if package.metadata else "{}"
        self._execute(
            """
            INSERT INTO packages (id, name, version, chain, builder, compiler_version,
                                  compiler_settings, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
            """,
            (
                package.id,
                package.name,
                package.version,
                package.chain,
                package.builder,
                package.compiler_version,
                "{}",
                metadata_json,
            ),
        )

    def get_package(self, name: str, version: str) -> Package:
        """Return a package version, raising NotFoundError if absent."""
        row = self._fetch_one(
            """
            SELECT id, name, version, chain, builder, compiler_version, compiler_settings,
                   metadata, created_at
            FROM packages
            WHERE name = ? AND version = ?
            """,
            (name, version),
        )
        if row is None:
            raise NotFoundError()
        return Package(
            id=_text(row[0]),
            name=_text(row[1]),
            version=_text(row[2]),
            chain=_text(row[3]),
            builder=_text(row[4]),
            compiler_version=_text(row[5]),
            metadata=_decode_metadata(row[7]),
            created_at=_text(row[8]),
        )

    def get_package_versions(self, name: str, include_prerelease: bool) -> list[str]:
        """Return all versions of a package, newest first."""
        return [
            _text(row[0])
            for row in self._rows(
                "SELECT version FROM packages WHERE name = ? ORDER BY created_at DESC", (name,)
            )
        ]

    def list_packages(
        self, package_filter: PackageFilter, pagination: PaginationParams
    ) -> PaginatedResult[Package]:
        """List packages grouped by name, paged by name cursor."""
        conditions: list[str] = []
        params: list[Any] = []
        if pagination.cursor:
            conditions.append("name > ?")
            params.append(pagination.cursor)
        if package_filter.query:
            conditions.append("name LIKE ?")
            params.append(f"%{package_filter.query}%")
        elif package_filter.chain:
            conditions.append("chain = ?")
            params.append(package_filter.chain)

        query = (
            "SELECT name, chain, builder, GROUP_CONCAT(version, ',') AS versions FROM packages"
        )
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " GROUP BY name ORDER BY name LIMIT ?"
        params.append(pagination.limit + 1)

        packages = [
            Package(
                name=_text(name),
                chain=_text(chain),
                builder=_text(builder),
                versions=_text(versions).split(",") if versions else [],
            )
            for name, chain, builder, versions in self._rows(query, params)
        ]

        has_more = len(packages) > pagination.limit
        if has_more:
            packages = packages[: pagination.limit]
        next_cursor = packages[-1].name if packages else ""
        return PaginatedResult(data=packages, has_more=has_more, next_cursor=next_cursor)

    def delete_package(self, name: str, version: str) -> None:
        """Delete a package version."""
        self._execute("DELETE FROM packages WHERE name = ? AND version = ?", (name, version))

    def package_exists(self, name: str, version: str) -> bool:
        """Return True if the package version exists."""
        row = self._fetch_one(
            "SELECT COUNT(*) FROM packages WHERE name = ? AND version = ?", (name, version)
        )
        return bool(row and row[0] > 0)

    def get_package_owner(self, name: str) -> str:
        """Return the owning API key ID of a package, or "" if it has none."""
        row = self._fetch_one(
            "SELECT owner_key_id FROM package_owners WHERE package_name = ?", (name,)
        )
        return "" if row is None else _text(row[0])

    def set_package_owner(self, name: str, owner_key_id: str) -> None:
        """Record the owner of a package unless one is already recorded."""
        self._execute(
            "INSERT OR IGNORE INTO package_owners (id, package_name, owner_key_id) VALUES (?, ?, ?)",
            (generate_id(), name, owner_key_id),
        )

    # Contracts and artifacts

    def create_contract(self, package_id: str, contract: Contract) -> None:
        """Insert a contract belonging to a package."""
        self._execute(
            """
            INSERT INTO contracts (id, package_id, name, chain, source_path, license,
                                   primary_hash, metadata_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
            """,
            (
                contract.id,
                package_id,
                contract.name,
                contract.chain,
                contract.source_path,
                contract.license,
                contract.primary_hash,
                contract.metadata_hash,
            ),
        )

    def get_contract(self, package_id: str, contract_name: str) -> Contract:
        """Return a contract by name, raising NotFoundError if absent."""
        row = self._fetch_one(
            f"SELECT {_CONTRACT_COLUMNS} FROM contracts WHERE package_id = ? AND name = ?",
            (package_id, contract_name),
        )
        if row is None:
            raise NotFoundError()
        return _contract_from_row(row)

    def list_contracts(self, package_id: str) -> list[Contract]:
        """Return every contract of a package."""
        return [
            _contract_from_row(row)
            for row in self._rows(
                f"SELECT {_CONTRACT_COLUMNS} FROM contracts WHERE package_id = ?", (package_id,)
            )
        ]

    def store_artifact(self, contract_id: str, artifact_type: str, content: bytes) -> None:
        """Store an artifact, replacing any of the same type for the contract."""
        self._execute(
            """
            INSERT INTO artifacts (id, contract_id, artifact_type, content_hash, content, size_bytes)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(contract_id, artifact_type) DO UPDATE SET
                content = excluded.content,
                content_hash = excluded.content_hash,
                size_bytes = excluded.size_bytes
            """,
            (
                generate_id(),
                contract_id,
                artifact_type,
                compute_hash(content),
                bytes(content),
                len(content),
            ),
        )

    def get_artifact(self, contract_id: str, artifact_type: str) -> bytes:
        """Return artifact content, raising NotFoundError if absent."""
        row = self._fetch_one(
            "SELECT content FROM artifacts WHERE contract_id = ? AND artifact_type = ?",
            (contract_id, artifact_type),
        )
        if row is None:
            raise NotFoundError()
        return bytes(row[0] or b"")

    def get_artifact_by_hash(self, content_hash: str) -> bytes:
        """Return artifact content by its SHA-256 hash, raising NotFoundError if absent."""
        row = self._fetch_one(
            "SELECT content FROM artifacts WHERE content_hash = ?", (content_hash,)
        )
        if row is None:
            raise NotFoundError()
        return bytes(row[0] or b"")

    # Deployments

    def record_deployment(self, deployment: Deployment) -> None:
        """Insert a deployment record."""
        self._execute(
            """
            INSERT INTO deployments (id, package_id, contract_name, chain, chain_id, address,
                                     deployer_address, tx_hash, block_number, deployment_data,
                                     created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
            """,
            (
                deployment.id,
                deployment.package_id,
                deployment.contract_name,
                deployment.chain,
                deployment.chain_id,
                deployment.address,
                deployment.deployer_address,
                deployment.tx_hash,
                deployment.block_number,
                "{}",
            ),
        )

    def get_deployment(self, chain: str, chain_id: str, address: str) -> Deployment:
        """Return a deployment by chain and address, raising NotFoundError if absent."""
        row = self._fetch_one(
            """
            SELECT id, package_id, contract_name, chain, chain_id, address, deployer_address,
                   tx_hash, block_number, verified, created_at
            FROM deployments
            WHERE chain = ? AND chain_id = ? AND address = ?
            """,
            (chain, chain_id, address),
        )
        if row is None:
            raise NotFoundError()
        return Deployment(
            id=_text(row[0]),
            package_id=_text(row[1]),
            contract_name=_text(row[2]),
            chain=_text(row[3]),
            chain_id=_text(row[4]),
            address=_text(row[5]),
            deployer_address=_text(row[6]),
            tx_hash=_text(row[7]),
            block_number=int(row[8] or 0),
            verified=bool(row[9]),
            created_at=_text(row[10]),
        )

    def list_deployments(
        self, deployment_filter: DeploymentFilter, pagination: PaginationParams
    ) -> PaginatedResult[Deployment]:
        """List deployments, newest first, up to the page limit."""
        deployments = [
            Deployment(
                id=_text(row[0]),
                package_id=_text(row[1]),
                contract_name=_text(row[2]),
                chain=_text(row[3]),
                chain_id=_text(row[4]),
                address=_text(row[5]),
                verified=bool(row[6]),
                created_at=_text(row[7]),
            )
            for row in self._rows(
                """
                SELECT id, package_id, contract_name, chain, chain_id, address, verified, created_at
                FROM deployments ORDER BY created_at DESC LIMIT ?
                """,
                (pagination.limit + 1,),
            )
        ]
        has_more = len(deployments) > pagination.limit
        if has_more:
            deployments = deployments[: pagination.limit]
        return PaginatedResult(data=deployments, has_more=has_more)

    def update_verification_status(
        self, deployment_id: str, verified: bool, verified_on: Sequence[str]
    ) -> None:
        """Set a deployment's verification flag and time."""
        self._execute(
            "UPDATE deployments SET verified = ?, verified_at = datetime('now') WHERE id = ?",
            (int(bool(verified)), deployment_id),
        )

    # API keys

    def create_api_key(self, name: str) -> str:
        """Create an API key and return it; only its hash is stored."""
        new_key = generate_api_key()
        self._execute(
            "INSERT INTO api_keys (id, key_hash, name, created_at) VALUES (?, ?, ?, datetime('now'))",
            (generate_id(), hash_api_key(new_key), name),
        )
        return new_key

    def validate_api_key(self, key: str) -> APIKey:
        """Return the record for an active key, raising NotFoundError otherwise."""
        row = self._fetch_one(
            "SELECT id, key_hash, name, created_at FROM api_keys "
            "WHERE key_hash = ? AND revoked_at IS NULL",
            (hash_api_key(key),),
        )
        if row is None:
            raise NotFoundError()
        record = APIKey(
            id=_text(row[0]), key_hash=_text(row[1]), name=_text(row[2]), created_at=_text(row[3])
        )
        try:
            self._execute(
                "UPDATE api_keys SET last_used_at = datetime('now') WHERE id = ?", (record.id,)
            )
        except sqlite3.Error as exc:
            logger.warning("failed to update API key last use: %s", exc)
        return record

    def list_api_keys(self) -> list[APIKey]:
        """Return all keys that have not been revoked."""
        return [
            APIKey(
                id=_text(row[0]),
                name=_text(row[1]),
                created_at=_text(row[2]),
                last_used_at=_text(row[3]),
            )
            for row in self._rows(
                "SELECT id, name, created_at, last_used_at FROM api_keys WHERE revoked_at IS NULL"
            )
        ]

    def revoke_api_key(self, key_id: str) -> None:
        """Revoke an API key by its ID."""
        self._execute(
            "UPDATE api_keys SET revoked_at = datetime('now') WHERE id = ?", (key_id,)
        )