# healthchain/auth.py
from datetime import timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt
from pymongo.errors import DuplicateKeyError

from healthchain.access import Caller
from healthchain.blockchain_client import SigningContext
from healthchain.errors import (
    AccountLockedError,
    AuthenticationError,
    DuplicateEntityError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from healthchain.identity import ENTITY_KINDS, MODEL_TO_KIND, IdentityRegistrar, account_hash
from healthchain.integrity import utcnow
from healthchain.log import get_logger
from healthchain.mongo import to_object_id

logger = get_logger(__name__)

MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(hours=2)
MIN_PASSWORD_LENGTH = 6
JWT_ALGORITHM = "HS256"


def _check_password(password) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


def _normalize_email(email) -> str:
    if not isinstance(email, str) or "@" not in email:
        raise ValidationError("A valid email is required")
    return email.strip().lower()


class AuthService:
    """User accounts: registration, login lockout and JWT bearer tokens."""

    def __init__(
        self,
        db,
        identities: IdentityRegistrar,
        jwt_secret: str,
        jwt_expires_minutes: int = 24 * 60,
        bcrypt_rounds: int = 12,
        clock=utcnow,
    ):
        self.db = db
        self.identities = identities
        self.jwt_secret = jwt_secret
        self.jwt_expires_minutes = jwt_expires_minutes
        self.bcrypt_rounds = bcrypt_rounds
        self.clock = clock

    def _hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def _verify_password(self, password: str, hashed: Optional[str]) -> bool:
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            logger.error("[AUTH] Stored password hash is malformed", exc_info=True)
            return False

    def generate_token(self, user: Dict[str, Any]) -> str:
        now = self.clock()
        claims = {
            "sub": str(user["_id"]),
            "email": user["email"],
            "role": user["role"],
            "iat": now,
            "exp": now + timedelta(minutes=self.jwt_expires_minutes),
        }
        return jwt.encode(claims, self.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> Dict[str, Any]:
        if not token:
            raise AuthenticationError("Access denied. No token provided.")
        if token.startswith("Bearer "):
            token = token[7:]

        try:
            return jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationError("Invalid or expired token") from e

    async def _entity_details(self, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        kind_name = MODEL_TO_KIND.get(user.get("entity_model"))
        if kind_name is None or user.get("entity_id") is None:
            return None
        return await self.db[ENTITY_KINDS[kind_name].collection].find_one({"_id": user["entity_id"]})

    async def register(
        self,
        role: str,
        email: str,
        password: str,
        entity_payload: Optional[Dict[str, Any]] = None,
        signer: Optional[SigningContext] = None,
    ) -> Dict[str, Any]:
        if role not in ENTITY_KINDS:
            raise ValidationError("Invalid role")
        email = _normalize_email(email)
        _check_password(password)

        if await self.db.users.find_one({"email": email}):
            raise DuplicateEntityError("User with this email already exists")

        payload = dict(entity_payload or {})
        payload["email"] = email
        entity, tx_id = await self.identities.register(role, payload, signer)
        kind = ENTITY_KINDS[role]

        now = self.clock()
        user = {
            "email": email,
            "password_hash": self._hash_password(password),
            "role": role,
            "entity_id": entity["_id"],
            "entity_model": kind.model,
            "wallet_address": entity.get("wallet_address"),
            "transactions": [
                {"hash": entity["content_hash"], "timestamp": now, "description": "User registered"}
            ],
            "login_attempts": 0,
            "lock_until": None,
            "last_login": None,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        user["content_hash"] = account_hash(user)

        try:
            await self.db.users.insert_one(user)
        except Exception as e:
            # no orphaned identities: undo the entity insert
            await self.db[kind.collection].delete_one({"_id": entity["_id"]})
            logger.warning(f"[AUTH] User insert failed for {email}, removed {kind.model} {entity['_id']}: {e}")
            if isinstance(e, DuplicateKeyError):
                raise DuplicateEntityError("User with this email already exists") from e
            raise

        logger.info(f"[AUTH] Registered {role} user {user['_id']}")
        return {
            "token": self.generate_token(user),
            "user": user,
            "entity": entity,
            "ledger_tx_id": tx_id,
            "expires_in": self.jwt_expires_minutes * 60,
        }

    async def create_admin(self, email: str, password: str) -> Dict[str, Any]:
        """Admins have no backing entity; this is not exposed over HTTP."""
        email = _normalize_email(email)
        _check_password(password)
        if await self.db.users.find_one({"email": email}):
            raise DuplicateEntityError("User with this email already exists")

        now = self.clock()
        user = {
            "email": email,
            "password_hash": self._hash_password(password),
            "role": "admin",
            "entity_id": None,
            "entity_model": None,
            "wallet_address": None,
            "transactions": [],
            "login_attempts": 0,
            "lock_until": None,
            "last_login": None,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        user["content_hash"] = account_hash(user)
        user["transactions"].append({"hash": user["content_hash"], "timestamp": now, "description": "User registered"})
        await self.db.users.insert_one(user)
        return user

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        email = _normalize_email(email)
        user = await self.db.users.find_one({"email": email})
        if user is None:
            raise AuthenticationError("Invalid email or password")

        now = self.clock()
        lock_until = user.get("lock_until")
        if lock_until is not None and lock_until > now:
            raise AccountLockedError(
                "Account is temporarily locked due to multiple failed login attempts",
                details={"lock_until": lock_until.isoformat()},
            )

        if not user.get("is_active", True):
            raise ForbiddenError("Account is deactivated")

        if not self._verify_password(password or "", user.get("password_hash")):
            await self._register_failure(user, now)
            raise AuthenticationError("Invalid email or password")

        await self.db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"login_attempts": 0, "lock_until": None, "last_login": now}},
        )
        user.update(login_attempts=0, lock_until=None, last_login=now)

        return {
            "token": self.generate_token(user),
            "user": user,
            "entity": await self._entity_details(user),
            "expires_in": self.jwt_expires_minutes * 60,
        }

    async def _register_failure(self, user: Dict[str, Any], now) -> None:
        lock_until = user.get("lock_until")
        if lock_until is not None and lock_until <= now:
            # previous lock has run out, start counting again
            attempts = 1
        else:
            attempts = int(user.get("login_attempts") or 0) + 1

        changes = {"login_attempts": attempts, "lock_until": None}
        if attempts >= MAX_LOGIN_ATTEMPTS:
            changes["lock_until"] = now + LOCK_DURATION
            logger.warning(f"[AUTH] Locking account {user['_id']} after {attempts} failed logins")

        await self.db.users.update_one({"_id": user["_id"]}, {"$set": changes})

    async def _load_user(self, user_id) -> Dict[str, Any]:
        user = await self.db.users.find_one({"_id": to_object_id(user_id, "user id")})
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def get_current_user(self, user_id) -> Dict[str, Any]:
        user = await self._load_user(user_id)
        return {"user": user, "entity": await self._entity_details(user)}

    async def resolve_caller(self, token: str) -> Caller:
        claims = self.verify_token(token)
        user = await self.db.users.find_one({"_id": to_object_id(claims.get("sub"), "user id")})
        if user is None:
            raise AuthenticationError("Invalid token. User not found.")
        if not user.get("is_active", True):
            raise AuthenticationError("Account is deactivated")

        entity_id = user.get("entity_id")
        return Caller(
            user_id=str(user["_id"]),
            role=user["role"],
            entity_id=str(entity_id) if entity_id is not None else None,
            wallet_address=user.get("wallet_address"),
            email=user.get("email"),
        )

    async def change_password(self, user_id, current_password: str, new_password: str) -> None:
        user = await self._load_user(user_id)
        if not self._verify_password(current_password or "", user.get("password_hash")):
            raise AuthenticationError("Current password is incorrect")
        _check_password(new_password)

        await self.db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": self._hash_password(new_password), "updated_at": self.clock()}},
        )
        logger.info(f"[AUTH] Password changed for user {user['_id']}")

    async def update_profile(self, user_id, email: Optional[str] = None, wallet_address: Optional[str] = None) -> Dict[str, Any]:
        user = await self._load_user(user_id)

        kind_name = MODEL_TO_KIND.get(user.get("entity_model"))
        if kind_name is not None and user.get("entity_id") is not None:
            # the entity owns email and wallet; the registrar mirrors them back here
            updates = {}
            if email is not None:
                updates["email"] = _normalize_email(email)
            if wallet_address is not None:
                updates["wallet_address"] = wallet_address
            await self.identities.update_profile(kind_name, user["entity_id"], updates)
            return await self._load_user(user["_id"])

        changes = {}
        if email is not None:
            email = _normalize_email(email)
            if email != user["email"]:
                if await self.db.users.find_one({"email": email, "_id": {"$ne": user["_id"]}}):
                    raise DuplicateEntityError("User with this email already exists")
                changes["email"] = email
        if wallet_address is not None and wallet_address != user.get("wallet_address"):
            changes["wallet_address"] = wallet_address

        if not changes:
            return user

        now = self.clock()
        changes["content_hash"] = account_hash({**user, **changes})
        changes["updated_at"] = now
        transaction = {"hash": changes["content_hash"], "timestamp": now, "description": "Profile updated"}

        try:
            await self.db.users.update_one(
                {"_id": user["_id"]},
                {"$set": changes, "$push": {"transactions": transaction}},
            )
        except DuplicateKeyError as e:
            raise DuplicateEntityError("User with this email already exists") from e

        user = {**user, **changes}
        user["transactions"] = list(user.get("transactions") or []) + [transaction]
        return user

    async def unlock(self, user_id) -> Dict[str, Any]:
        user = await self._load_user(user_id)
        await self.db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"login_attempts": 0, "lock_until": None, "updated_at": self.clock()}},
        )
        logger.info(f"[AUTH] Unlocked user {user['_id']}")
        return {**user, "login_attempts": 0, "lock_until": None}

    async def delete_account(self, user_id) -> Dict[str, Any]:
        user = await self._load_user(user_id)

        kind_name = MODEL_TO_KIND.get(user.get("entity_model"))
        if kind_name is not None and user.get("entity_id") is not None:
            # removes the owning user as well
            await self.identities.delete(kind_name, user["entity_id"])
        await self.db.users.delete_one({"_id": user["_id"]})

        logger.info(f"[AUTH] Deleted account {user['_id']}")
        return user
