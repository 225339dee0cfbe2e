import sqlite3

import pytest

from contrafactory.models import (
    Contract,
    Deployment,
    DeploymentFilter,
    NotFoundError,
    Package,
    PackageFilter,
    PaginationParams,
    compute_hash,
)
from contrafactory.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(tmp_path / "test.db")
    s.migrate()
    yield s
    s.close()


@pytest.fixture
def seeded(store):
    store.create_package(
        Package(id="test-id-1", name="test-package", version="1.0.0", chain="evm", builder="foundry")
    )
    store.create_package(
        Package(id="test-id-2", name="test-package", version="1.1.0", chain="evm", builder="foundry")
    )
    return store


def test_create_and_get_package(store):
    store.create_package(
        Package(id="test-id-1", name="test-package", version="1.0.0", chain="evm", builder="foundry")
    )
    got = store.get_package("test-package", "1.0.0")
    assert got.name == "test-package"
    assert got.version == "1.0.0"
    assert got.builder == "foundry"
    assert got.created_at != ""


def test_get_missing_package_raises(store):
    with pytest.raises(NotFoundError):
        store.get_package("nonexistent", "1.0.0")


def test_package_metadata_round_trip(store):
    store.create_package(
        Package(id="p", name="meta-pkg", version="1.0.0", chain="evm", metadata={"repo": "demo"})
    )
    assert store.get_package("meta-pkg", "1.0.0").metadata == {"repo": "demo"}


def test_package_exists(seeded):
    assert seeded.package_exists("test-package", "1.0.0") is True
    assert seeded.package_exists("nonexistent", "1.0.0") is False


def test_get_package_versions(seeded):
    versions = seeded.get_package_versions("test-package", True)
    assert sorted(versions) == ["1.0.0", "1.1.0"]


def test_duplicate_version_rejected(seeded):
    with pytest.raises(sqlite3.IntegrityError):
        seeded.create_package(
            Package(id="other", name="test-package", version="1.0.0", chain="evm")
        )


def test_create_and_get_contract(seeded):
    contract = Contract(
        id="contract-id-1",
        package_id="test-id-1",
        name="Token",
        chain="evm",
        source_path="src/Token.sol",
        primary_hash="abc123",
    )
    seeded.create_contract("test-id-1", contract)
    got = seeded.get_contract("test-id-1", "Token")
    assert got.name == "Token"
    assert got.source_path == "src/Token.sol"
    assert [c.id for c in seeded.list_contracts("test-id-1")] == ["contract-id-1"]


def test_get_missing_contract_raises(seeded):
    with pytest.raises(NotFoundError):
        seeded.get_contract("test-id-1", "Missing")


def test_store_and_get_artifact(seeded):
    seeded.create_contract(
        "test-id-1",
        Contract(id="contract-id-1", name="Token", chain="evm", source_path="src/Token.sol", primary_hash="abc123"),
    )
    content = b'{"type":"function","name":"transfer"}'
    seeded.store_artifact("contract-id-1", "abi", content)
    assert seeded.get_artifact("contract-id-1", "abi") == content
    assert seeded.get_artifact_by_hash(compute_hash(content)) == content

    replacement = b"[]"
    seeded.store_artifact("contract-id-1", "abi", replacement)
    assert seeded.get_artifact("contract-id-1", "abi") == replacement
    with pytest.raises(NotFoundError):
        seeded.get_artifact("contract-id-1", "bytecode")


def test_list_packages(seeded):
    result = seeded.list_packages(PackageFilter(), PaginationParams(limit=10))
    found = [p for p in result.data if p.name == "test-package"]
    assert len(found) == 1
    pkg = found[0]
    assert pkg.chain == "evm"
    assert pkg.builder == "foundry"
    assert sorted(pkg.versions) == ["1.0.0", "1.1.0"]
    assert result.has_more is False
    assert result.next_cursor == "test-package"


def test_list_packages_pagination_and_filter(store):
    for idx, name in enumerate(["alpha", "beta", "gamma"]):
        store.create_package(Package(id=f"id-{idx}", name=name, version="1.0.0", chain="evm"))
    first = store.list_packages(PackageFilter(), PaginationParams(limit=2))
    assert [p.name for p in first.data] == ["alpha", "beta"]
    assert first.has_more is True
    assert first.next_cursor == "beta"

    second = store.list_packages(PackageFilter(), PaginationParams(limit=2, cursor=first.next_cursor))
    assert [p.name for p in second.data] == ["gamma"]
    assert second.has_more is False

    filtered = store.list_packages(PackageFilter(query="amm"), PaginationParams(limit=10))
    assert [p.name for p in filtered.data] == ["gamma"]


def test_delete_package(seeded):
    seeded.delete_package("test-package", "1.1.0")
    assert seeded.package_exists("test-package", "1.1.0") is False
    assert seeded.package_exists("test-package", "1.0.0") is True


def test_package_owner_first_come(store):
    assert store.get_package_owner("owned") == ""
    first = store.create_api_key("first")
    second = store.create_api_key("second")
    first_id = store.validate_api_key(first).id
    second_id = store.validate_api_key(second).id
    store.set_package_owner("owned", first_id)
    store.set_package_owner("owned", second_id)
    assert store.get_package_owner("owned") == first_id


def test_deployments(seeded):
    address = "0x1234567890abcdef1234567890abcdef12345678"
    seeded.record_deployment(
        Deployment(
            id="deploy-1",
            package_id="test-id-1",
            contract_name="Token",
            chain="evm",
            chain_id="1",
            address=address,
            tx_hash="0xabcdef",
            block_number=42,
        )
    )
    got = seeded.get_deployment("evm", "1", address)
    assert got.id == "deploy-1"
    assert got.block_number == 42
    assert got.verified is False

    seeded.update_verification_status("deploy-1", True, ["etherscan"])
    assert seeded.get_deployment("evm", "1", address).verified is True

    listed = seeded.list_deployments(DeploymentFilter(), PaginationParams(limit=10))
    assert [d.id for d in listed.data] == ["deploy-1"]
    assert listed.has_more is False

    with pytest.raises(NotFoundError):
        seeded.get_deployment("evm", "137", address)


def test_create_and_validate_api_key(store):
    issued = store.create_api_key("test-key")
    assert issued.startswith("cf_key_")
    record = store.validate_api_key(issued)
    assert record.name == "test-key"


def test_invalid_api_key(store):
    with pytest.raises(NotFoundError):
        store.validate_api_key("placeholder")


def test_list_and_revoke_api_keys(store):
    issued = store.create_api_key("ci")
    record = store.validate_api_key(issued)
    listed = store.list_api_keys()
    assert [k.name for k in listed] == ["ci"]
    assert listed[0].last_used_at != ""

    store.revoke_api_key(record.id)
    assert store.list_api_keys() == []
    with pytest.raises(NotFoundError):
        store.validate_api_key(issued)


def test_migrate_is_idempotent_and_creates_directory(tmp_path):
    db_path = tmp_path / "nested" / "dir" / "test.db"
    with SQLiteStore(db_path) as s:
        s.migrate()
        s.migrate()
        assert s.package_exists("anything", "1.0.0") is False
    assert db_path.exists()


def test_closed_store_rejects_use(tmp_path):
    s = SQLiteStore(tmp_path / "test.db")
    s.migrate()
    s.close()
    with pytest.raises(sqlite3.ProgrammingError):
        s.package_exists("x", "1.0.0")