"""Shared fixtures: in-process Mongo, a recording ledger and a controllable clock."""

from datetime import timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from healthchain.access import Caller
from healthchain.blockchain_client import LedgerGateway, SigningContext, StubLedgerGateway
from healthchain.config import ModeConfig, Settings
from healthchain.container import build_services
from healthchain.errors import MissingSignerError
from healthchain.integrity import utcnow
from healthchain.storage import InMemoryKeyValueStore

# well-known local development accounts, never funded outside a dev chain
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
DOCTOR_WALLET = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OTHER_DOCTOR_WALLET = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
PATIENT_WALLET = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
HOSPITAL_WALLET = "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"

JWT_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256"


class FakeLedgerGateway(LedgerGateway):
    """Records every submission; set ``fail_with`` to make the ledger misbehave."""

    def __init__(self):
        self.submissions = []
        self.calls = []
        self.fail_with = None
        self.allowed = False

    async def submit(self, operation, args, signer):
        if signer is None:
            raise MissingSignerError(f"Missing signing key for on-chain {operation}")
        if self.fail_with is not None:
            raise self.fail_with
        self.submissions.append((operation, list(args), signer))
        return f"0xtx{len(self.submissions)}"

    async def call(self, operation, args):
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((operation, list(args)))
        return self.allowed


class MutableClock:
    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db():
    return AsyncMongoMockClient()["healthchain_test"]


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def ledger():
    return FakeLedgerGateway()


@pytest.fixture
def signer():
    return SigningContext(TEST_PRIVATE_KEY)


@pytest.fixture
def test_settings():
    return Settings(
        fallback_store="memory",
        jwt_secret=JWT_SECRET,
        bcrypt_rounds=4,
        hospital_private_key=None,
    )


@pytest.fixture
def make_services(db, ledger, clock, test_settings):
    """Factory: a full service container for the given mode string."""

    def _make(mode="disabled", **overrides):
        return build_services(
            db,
            overrides.pop("settings", test_settings),
            ModeConfig.from_value(mode),
            ledger=ledger,
            stub_ledger=StubLedgerGateway(),
            consent_store=InMemoryKeyValueStore(),
            incentive_store=InMemoryKeyValueStore(),
            clock=overrides.pop("clock", clock),
        )

    return _make


class EntityFactory:
    def __init__(self, db):
        self.db = db
        self.counter = 0

    async def _insert(self, collection, doc):
        self.counter += 1
        now = utcnow()
        doc = {"created_at": now, "updated_at": now, **doc}
        await self.db[collection].insert_one(doc)
        return doc

    async def hospital(self, **fields):
        return await self._insert(
            "hospitals",
            {"name": f"Hospital {self.counter}", "email": f"hospital{self.counter}@example.com", **fields},
        )

    async def doctor(self, hospital=None, **fields):
        doc = {"full_name": f"Dr. {self.counter}", "email": f"doctor{self.counter}@example.com", **fields}
        if hospital is not None:
            doc["hospital_id"] = hospital["_id"]
        return await self._insert("doctors", doc)

    async def patient(self, **fields):
        return await self._insert(
            "patients",
            {"full_name": f"Patient {self.counter}", "email": f"patient{self.counter}@example.com", **fields},
        )


@pytest.fixture
def entities(db):
    return EntityFactory(db)


def caller_for(role, entity=None, wallet=None, user_id=None):
    return Caller(
        user_id=user_id or f"user-{role}-{entity['_id'] if entity else 'admin'}",
        role=role,
        entity_id=str(entity["_id"]) if entity is not None else None,
        wallet_address=wallet,
    )


@pytest.fixture
def make_caller():
    return caller_for
