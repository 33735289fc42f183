from datetime import date, timedelta

import jwt
import pytest
from pymongo.errors import DuplicateKeyError

from healthchain.auth import LOCK_DURATION, MAX_LOGIN_ATTEMPTS, AuthService
from healthchain.errors import (
    AccountLockedError,
    AuthenticationError,
    DuplicateEntityError,
    ForbiddenError,
    ValidationError,
)
from healthchain.integrity import utcnow

from .conftest import JWT_SECRET, PATIENT_WALLET, MutableClock

PATIENT_PROFILE = {"full_name": "Jane Doe", "dob": date(1990, 1, 1), "wallet_address": PATIENT_WALLET}


class FailingUsers:
    def __init__(self, users):
        self._users = users

    async def find_one(self, *args, **kwargs):
        return await self._users.find_one(*args, **kwargs)

    async def insert_one(self, doc):
        raise DuplicateKeyError("E11000 duplicate key error collection: users index: email_1")


class FailingUsersDb:
    """Database wrapper whose users collection rejects inserts."""

    def __init__(self, db):
        self._db = db
        self.users = FailingUsers(db.users)

    def __getitem__(self, name):
        return self._db[name]


async def _register_patient(auth, email="jane@example.com", password="secret1"):
    return await auth.register("patient", email, password, dict(PATIENT_PROFILE))


@pytest.mark.asyncio
async def test_register_creates_user_and_entity(make_services, db):
    auth = make_services().auth

    result = await _register_patient(auth, email="Jane@Example.com")

    user = result["user"]
    assert user["email"] == "jane@example.com"
    assert user["role"] == "patient"
    assert user["entity_model"] == "Patient"
    assert user["entity_id"] == result["entity"]["_id"]
    assert user["wallet_address"] == PATIENT_WALLET
    assert user["password_hash"] != "secret1"
    assert user["transactions"][0]["description"] == "User registered"
    assert result["entity"]["email"] == "jane@example.com"
    assert result["expires_in"] == 24 * 60 * 60
    assert await db.users.count_documents({}) == 1

    claims = auth.verify_token(result["token"])
    assert claims["sub"] == str(user["_id"])
    assert claims["role"] == "patient"


@pytest.mark.asyncio
async def test_register_rejects_duplicate_email(make_services, db):
    auth = make_services().auth
    await _register_patient(auth)

    with pytest.raises(DuplicateEntityError):
        await _register_patient(auth, email="JANE@example.com")

    assert await db.patients.count_documents({}) == 1


@pytest.mark.asyncio
async def test_register_validation(make_services):
    auth = make_services().auth

    with pytest.raises(ValidationError):
        await auth.register("admin", "root@example.com", "secret1", {})
    with pytest.raises(ValidationError):
        await auth.register("patient", "not-an-email", "secret1", dict(PATIENT_PROFILE))
    with pytest.raises(ValidationError):
        await auth.register("patient", "jane@example.com", "short", dict(PATIENT_PROFILE))


@pytest.mark.asyncio
async def test_register_removes_entity_when_user_insert_fails(make_services, db, test_settings):
    services = make_services()
    auth = AuthService(FailingUsersDb(db), services.identities, JWT_SECRET, bcrypt_rounds=test_settings.bcrypt_rounds)

    with pytest.raises(DuplicateEntityError):
        await _register_patient(auth)

    assert await db.patients.count_documents({}) == 0


@pytest.mark.asyncio
async def test_login_success(make_services, db):
    auth = make_services().auth
    registered = await _register_patient(auth)

    result = await auth.login("JANE@example.com", "secret1")

    assert result["user"]["_id"] == registered["user"]["_id"]
    assert result["entity"]["full_name"] == "Jane Doe"
    assert result["user"]["last_login"] is not None
    assert auth.verify_token(result["token"])["email"] == "jane@example.com"


@pytest.mark.asyncio
async def test_login_unknown_email(make_services):
    auth = make_services().auth
    with pytest.raises(AuthenticationError):
        await auth.login("ghost@example.com", "secret1")


@pytest.mark.asyncio
async def test_lockout_after_repeated_failures(make_services, db, clock):
    auth = make_services().auth
    await _register_patient(auth)

    for _ in range(MAX_LOGIN_ATTEMPTS):
        with pytest.raises(AuthenticationError):
            await auth.login("jane@example.com", "wrong-password")

    user = await db.users.find_one({"email": "jane@example.com"})
    assert user["login_attempts"] == MAX_LOGIN_ATTEMPTS
    assert user["lock_until"] == clock.now + LOCK_DURATION

    # even the right password is refused while locked
    with pytest.raises(AccountLockedError):
        await auth.login("jane@example.com", "secret1")

    clock.advance(hours=2, seconds=1)
    result = await auth.login("jane@example.com", "secret1")
    assert result["user"]["login_attempts"] == 0
    assert result["user"]["lock_until"] is None


@pytest.mark.asyncio
async def test_failure_after_expired_lock_restarts_count(make_services, db, clock):
    auth = make_services().auth
    await _register_patient(auth)
    for _ in range(MAX_LOGIN_ATTEMPTS):
        with pytest.raises(AuthenticationError):
            await auth.login("jane@example.com", "wrong-password")

    clock.advance(hours=3)
    with pytest.raises(AuthenticationError):
        await auth.login("jane@example.com", "wrong-password")

    user = await db.users.find_one({"email": "jane@example.com"})
    assert user["login_attempts"] == 1
    assert user["lock_until"] is None


@pytest.mark.asyncio
async def test_inactive_account_cannot_log_in(make_services, db):
    auth = make_services().auth
    registered = await _register_patient(auth)
    await db.users.update_one({"_id": registered["user"]["_id"]}, {"$set": {"is_active": False}})

    with pytest.raises(ForbiddenError):
        await auth.login("jane@example.com", "secret1")
    with pytest.raises(AuthenticationError):
        await auth.resolve_caller(registered["token"])


@pytest.mark.asyncio
async def test_resolve_caller_from_bearer_token(make_services):
    auth = make_services().auth
    registered = await _register_patient(auth)

    caller = await auth.resolve_caller(f"Bearer {registered['token']}")

    assert caller.user_id == str(registered["user"]["_id"])
    assert caller.role == "patient"
    assert caller.entity_id == str(registered["entity"]["_id"])
    assert caller.wallet_address == PATIENT_WALLET


def test_verify_token_rejects_garbage_and_foreign_signatures(make_services):
    auth = make_services().auth

    with pytest.raises(AuthenticationError):
        auth.verify_token("")
    with pytest.raises(AuthenticationError):
        auth.verify_token("Bearer not.a.jwt")

    forged = jwt.encode({"sub": "x", "exp": utcnow() + timedelta(hours=1)}, "another-secret-of-decent-length!!", algorithm="HS256")
    with pytest.raises(AuthenticationError):
        auth.verify_token(forged)


@pytest.mark.asyncio
async def test_expired_token(make_services, db):
    services = make_services()
    past = MutableClock(start=utcnow() - timedelta(days=2))
    auth = AuthService(db, services.identities, JWT_SECRET, jwt_expires_minutes=60, bcrypt_rounds=4, clock=past)
    token = auth.generate_token({"_id": "abc", "email": "x@example.com", "role": "patient"})

    with pytest.raises(AuthenticationError) as exc:
        auth.verify_token(token)
    assert exc.value.message == "Token expired"


@pytest.mark.asyncio
async def test_change_password(make_services):
    auth = make_services().auth
    registered = await _register_patient(auth)
    user_id = registered["user"]["_id"]

    with pytest.raises(AuthenticationError):
        await auth.change_password(user_id, "wrong", "newsecret")
    with pytest.raises(ValidationError):
        await auth.change_password(user_id, "secret1", "new")

    await auth.change_password(user_id, "secret1", "newsecret")

    with pytest.raises(AuthenticationError):
        await auth.login("jane@example.com", "secret1")
    assert (await auth.login("jane@example.com", "newsecret"))["user"]["_id"] == user_id


@pytest.mark.asyncio
async def test_update_profile_rehashes_and_logs_transaction(make_services, db):
    auth = make_services().auth
    registered = await _register_patient(auth)
    await auth.register("patient", "taken@example.com", "secret1", {**PATIENT_PROFILE, "wallet_address": None})
    user = registered["user"]

    updated = await auth.update_profile(user["_id"], email="Jane.Doe@Example.com")

    assert updated["email"] == "jane.doe@example.com"
    assert updated["content_hash"] != user["content_hash"]
    stored = await db.users.find_one({"_id": user["_id"]})
    assert [t["description"] for t in stored["transactions"]] == ["User registered", "Profile updated"]

    with pytest.raises(DuplicateEntityError):
        await auth.update_profile(user["_id"], email="taken@example.com")

    unchanged = await auth.update_profile(user["_id"], email="jane.doe@example.com")
    assert unchanged["content_hash"] == updated["content_hash"]


@pytest.mark.asyncio
async def test_unlock(make_services, db):
    auth = make_services().auth
    registered = await _register_patient(auth)
    for _ in range(MAX_LOGIN_ATTEMPTS):
        with pytest.raises(AuthenticationError):
            await auth.login("jane@example.com", "wrong-password")

    await auth.unlock(registered["user"]["_id"])

    assert (await auth.login("jane@example.com", "secret1"))["user"]["login_attempts"] == 0


@pytest.mark.asyncio
async def test_delete_account_removes_entity(make_services, db):
    auth = make_services().auth
    registered = await _register_patient(auth)

    await auth.delete_account(registered["user"]["_id"])

    assert await db.users.count_documents({}) == 0
    assert await db.patients.count_documents({}) == 0


@pytest.mark.asyncio
async def test_create_admin(make_services):
    auth = make_services().auth

    admin = await auth.create_admin("Root@Example.com", "rootpass")

    assert admin["role"] == "admin"
    assert admin["entity_id"] is None
    result = await auth.login("root@example.com", "rootpass")
    assert result["entity"] is None
    caller = await auth.resolve_caller(result["token"])
    assert caller.is_admin
    with pytest.raises(DuplicateEntityError):
        await auth.create_admin("root@example.com", "rootpass")


@pytest.mark.asyncio
async def test_entity_and_account_stay_in_step(make_services, db):
    services = make_services()
    auth = services.auth
    registered = await _register_patient(auth)
    patient_id = registered["entity"]["_id"]
    new_wallet = "0x9965507D1a55bcC2695C58ba16FB37d819B0A4dc"

    await services.identities.update_profile("patient", patient_id, {"wallet_address": new_wallet})

    caller = await auth.resolve_caller(registered["token"])
    assert caller.wallet_address == new_wallet

    await auth.update_profile(registered["user"]["_id"], email="Jane.New@Example.com")

    entity = await db.patients.find_one({"_id": patient_id})
    user = await db.users.find_one({"_id": registered["user"]["_id"]})
    assert entity["email"] == user["email"] == "jane.new@example.com"
    assert entity["wallet_address"] == user["wallet_address"] == new_wallet
    assert [t["description"] for t in user["transactions"]] == ["User registered", "Profile updated", "Profile updated"]
