"""Shared test fixtures."""
import asyncio
import hashlib
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from petchain.models.sync import SyncState  # noqa: F401
from petchain.crypto.encryptor import Encryptor, derive_key
from petchain.ipfs.client import ContentNotFound
from petchain.stellar.client import record_data_key

# PBKDF2 at production strength makes every test pay ~0.5s; the key schedule
# is the same at any iteration count.
TEST_KDF_ITERATIONS = 1000


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture(name="encryptor")
def encryptor_fixture() -> Encryptor:
    return Encryptor(derive_key("test-secret", iterations=TEST_KDF_ITERATIONS))


# ─── In-process stand-ins for IPFS and Stellar ────────────────────────────────

class FakeIPFS:
    """Content-addressed dict. Set `fail` to make every upload raise it."""

    def __init__(self):
        self.blobs = {}
        self.uploads = 0
        self.fail = None

    async def upload(self, data: bytes) -> str:
        await asyncio.sleep(0)
        self.uploads += 1
        if self.fail is not None:
            raise self.fail
        cid = "Qm" + hashlib.sha256(data).hexdigest()[:44]
        self.blobs[cid] = data
        return cid

    async def retrieve(self, cid: str) -> bytes:
        if cid not in self.blobs:
            raise ContentNotFound(f"IPFS content not found: {cid}")
        return self.blobs[cid]


class FakeLedger:
    """Account data entries keyed the same way the real client keys them."""

    def __init__(self):
        self.entries = {}
        self.submissions = 0
        self.fail = None

    async def anchor_record(self, record_hash: str, store_address: str) -> str:
        await asyncio.sleep(0)
        self.submissions += 1
        if self.fail is not None:
            raise self.fail
        self.entries[record_data_key(record_hash)] = store_address
        return hashlib.sha256(f"{self.submissions}:{record_hash}".encode()).hexdigest()

    async def verify_on_chain(self, record_hash: str):
        return self.entries.get(record_data_key(record_hash))


@pytest.fixture(name="fake_ipfs")
def fake_ipfs_fixture() -> FakeIPFS:
    return FakeIPFS()


@pytest.fixture(name="fake_ledger")
def fake_ledger_fixture() -> FakeLedger:
    return FakeLedger()
