# healthchain/identity.py
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from healthchain.blockchain_client import LedgerGateway, SigningContext
from healthchain.config import ModeConfig
from healthchain.errors import DuplicateEntityError, EntityNotFoundError, ValidationError
from healthchain.integrity import AuditChain, compute_data_hash, utcnow
from healthchain.log import get_logger
from healthchain.mongo import page_bounds, to_object_id

logger = get_logger(__name__)

CAPABILITY = "identity"


def _patient_hash(doc):
    # whole registration payload, tagged with the role
    return compute_data_hash({**doc, "role": "Patient"})


def _doctor_hash(doc):
    return compute_data_hash({"license_number": doc.get("license_number"), "email": doc.get("email")})


def _hospital_hash(doc):
    return compute_data_hash(
        {"registration_number": doc.get("registration_number"), "email": doc.get("email")}
    )


# entity fields mirrored onto the owning user account
ACCOUNT_FIELDS = ("email", "wallet_address")


def account_hash(user: Dict[str, Any]) -> str:
    return compute_data_hash(
        {
            "email": user.get("email"),
            "role": user.get("role"),
            "entity_id": user.get("entity_id"),
            "entity_model": user.get("entity_model"),
            "wallet_address": user.get("wallet_address"),
        }
    )


@dataclass(frozen=True)
class EntityKind:
    """Per-role schema: which fields exist, which are hashed, which are unique."""

    model: str
    collection: str
    ledger_operation: str
    required: FrozenSet[str]
    fields: FrozenSet[str]
    hashed: FrozenSet[str]
    unique: Tuple[str, ...]
    fingerprint: Callable[[Dict[str, Any]], str]


PATIENT_FIELDS = frozenset(
    {
        "full_name", "dob", "gender", "blood_group", "contact_number", "email",
        "address", "emergency_contact", "wallet_address",
    }
)
DOCTOR_FIELDS = frozenset(
    {
        "full_name", "specialization", "qualification", "license_number",
        "contact_number", "email", "hospital_id", "years_of_experience", "wallet_address",
    }
)
HOSPITAL_FIELDS = frozenset(
    {
        "name", "type", "registration_number", "contact_number", "email",
        "address", "wallet_address",
    }
)

ENTITY_KINDS: Dict[str, EntityKind] = {
    "patient": EntityKind(
        model="Patient",
        collection="patients",
        ledger_operation="registerPatient",
        required=frozenset({"full_name", "dob"}),
        fields=PATIENT_FIELDS,
        hashed=PATIENT_FIELDS,
        unique=("email",),
        fingerprint=_patient_hash,
    ),
    "doctor": EntityKind(
        model="Doctor",
        collection="doctors",
        ledger_operation="registerDoctor",
        required=frozenset({"full_name"}),
        fields=DOCTOR_FIELDS,
        hashed=frozenset({"license_number", "email"}),
        unique=("email", "license_number"),
        fingerprint=_doctor_hash,
    ),
    "hospital": EntityKind(
        model="Hospital",
        collection="hospitals",
        ledger_operation="registerHospital",
        required=frozenset({"name"}),
        fields=HOSPITAL_FIELDS,
        hashed=frozenset({"registration_number", "email"}),
        unique=("email", "registration_number"),
        fingerprint=_hospital_hash,
    ),
}

MODEL_TO_KIND = {kind.model: name for name, kind in ENTITY_KINDS.items()}


def get_kind(name: str) -> EntityKind:
    try:
        return ENTITY_KINDS[name]
    except KeyError:
        raise ValidationError(f"Unknown entity type: {name}") from None


def _normalize(value):
    # BSON has no plain date type
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    return value


def _public_fields(kind: EntityKind, doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: doc[k] for k in kind.fields if doc.get(k) is not None}


class IdentityRegistrar:
    def __init__(
        self,
        db,
        mode: ModeConfig,
        ledger: LedgerGateway,
        audit: Optional[AuditChain] = None,
        clock=utcnow,
    ):
        self.db = db
        self.mode = mode
        self.ledger = ledger
        self.audit = audit
        self.clock = clock

    @property
    def ledger_active(self) -> bool:
        return self.mode.blockchain_active(CAPABILITY)

    def _clean(self, kind: EntityKind, payload: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(payload) - kind.fields
        if unknown:
            raise ValidationError(
                f"Unknown {kind.model} field(s): {', '.join(sorted(unknown))}"
            )
        doc = {k: _normalize(v) for k, v in payload.items() if v is not None}
        missing = [f for f in sorted(kind.required) if f not in doc or doc[f] == ""]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
        if "email" in doc:
            doc["email"] = str(doc["email"]).strip().lower()
        return doc

    async def _ensure_unique(self, kind: EntityKind, doc: Dict[str, Any], exclude_id=None):
        for field in kind.unique:
            if doc.get(field) is None:
                continue
            query = {field: doc[field]}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if await self.db[kind.collection].find_one(query):
                raise DuplicateEntityError(f"{kind.model} with this {field} already exists")

    async def register(
        self,
        kind_name: str,
        payload: Dict[str, Any],
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        kind = get_kind(kind_name)
        doc = self._clean(kind, payload)

        if doc.get("hospital_id") is not None:
            doc["hospital_id"] = (await self.get("hospital", doc["hospital_id"]))["_id"]

        await self._ensure_unique(kind, doc)

        content_hash = kind.fingerprint(doc)

        tx_id = None
        if self.ledger_active:
            tx_id = await self.ledger.submit(kind.ledger_operation, [content_hash], signer)

        now = self.clock()
        entity = {
            **doc,
            "content_hash": content_hash,
            "ledger_tx_id": tx_id,
            # frozen per record: later mode changes do not rewrite it
            "ledger_mirrored": self.ledger_active,
            "created_at": now,
            "updated_at": now,
        }

        try:
            await self.db[kind.collection].insert_one(entity)
        except DuplicateKeyError as e:
            if tx_id is not None and self.audit is not None:
                await self.audit.mark_pending(
                    f"{kind_name}_registration", content_hash, None, content_hash, tx_id, str(e)
                )
            raise DuplicateEntityError(f"{kind.model} already exists") from e
        except Exception as e:
            if tx_id is not None and self.audit is not None:
                await self.audit.mark_pending(
                    f"{kind_name}_registration", content_hash, None, content_hash, tx_id, str(e)
                )
            raise

        if self.audit is not None:
            await self.audit.append(
                f"{kind_name}_registration",
                str(entity["_id"]),
                str(entity["_id"]),
                content_hash,
                ledger_tx_id=tx_id,
            )

        logger.info(f"[IDENTITY] Registered {kind.model} {entity['_id']} hash={content_hash[:18]}...")
        return entity, tx_id

    async def register_patient(self, payload, signer=None):
        return await self.register("patient", payload, signer)

    async def register_doctor(self, payload, signer=None):
        return await self.register("doctor", payload, signer)

    async def register_hospital(self, payload, signer=None):
        return await self.register("hospital", payload, signer)

    async def get(self, kind_name: str, entity_id) -> Dict[str, Any]:
        kind = get_kind(kind_name)
        doc = await self.db[kind.collection].find_one({"_id": to_object_id(entity_id, f"{kind_name} id")})
        if doc is None:
            raise EntityNotFoundError(kind.model, entity_id)
        return doc

    async def list(self, kind_name: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        kind = get_kind(kind_name)
        skip, limit = page_bounds(page, limit)
        collection = self.db[kind.collection]
        cursor = collection.find({}).sort("created_at", 1).skip(skip).limit(limit)
        data = await cursor.to_list(length=None)
        total = await collection.count_documents({})
        return {"data": data, "page": page, "limit": limit, "total": total}

    async def update_profile(self, kind_name: str, entity_id, updates: Dict[str, Any]) -> Dict[str, Any]:
        kind = get_kind(kind_name)
        current = await self.get(kind_name, entity_id)

        unknown = set(updates) - kind.fields
        if unknown:
            raise ValidationError(
                f"Field(s) not updatable for {kind.model}: {', '.join(sorted(unknown))}"
            )

        changes = {k: _normalize(v) for k, v in updates.items() if v is not None}
        if "email" in changes:
            changes["email"] = str(changes["email"]).strip().lower()
        changes = {k: v for k, v in changes.items() if current.get(k) != v}
        if not changes:
            return current

        if "hospital_id" in changes:
            changes["hospital_id"] = (await self.get("hospital", changes["hospital_id"]))["_id"]

        await self._ensure_unique(kind, changes, exclude_id=current["_id"])
        if "email" in changes:
            # login emails are unique across every account, admins included
            if await self.db.users.find_one({"email": changes["email"], "entity_id": {"$ne": current["_id"]}}):
                raise DuplicateEntityError("User with this email already exists")

        merged = {**current, **changes}
        if kind.hashed & set(changes):
            changes["content_hash"] = kind.fingerprint(_public_fields(kind, merged))
        changes["updated_at"] = self.clock()

        try:
            await self.db[kind.collection].update_one({"_id": current["_id"]}, {"$set": changes})
        except DuplicateKeyError as e:
            raise DuplicateEntityError(f"{kind.model} with these details already exists") from e

        await self._sync_account(kind, current["_id"], changes)

        if self.audit is not None and "content_hash" in changes:
            await self.audit.append(
                f"{kind_name}_profile_update",
                str(current["_id"]),
                str(current["_id"]),
                changes["content_hash"],
            )

        return {**current, **changes}

    async def _sync_account(self, kind: EntityKind, entity_id, changes: Dict[str, Any]) -> None:
        """
        Copy email and wallet changes onto the user account owning the entity.

        The entity is the source of truth; the account copy is what bearer
        tokens resolve to, so the two must never diverge.
        """
        shared = {f: changes[f] for f in ACCOUNT_FIELDS if f in changes}
        if not shared:
            return

        user = await self.db.users.find_one({"entity_id": entity_id, "entity_model": kind.model})
        if user is None:
            return

        now = self.clock()
        user_changes = {**shared, "updated_at": now}
        user_changes["content_hash"] = account_hash({**user, **shared})
        transaction = {"hash": user_changes["content_hash"], "timestamp": now, "description": "Profile updated"}

        try:
            await self.db.users.update_one(
                {"_id": user["_id"]},
                {"$set": user_changes, "$push": {"transactions": transaction}},
            )
        except DuplicateKeyError as e:
            raise DuplicateEntityError("User with this email already exists") from e
        logger.info(f"[IDENTITY] Synced {', '.join(sorted(shared))} onto user {user['_id']}")

    async def delete(self, kind_name: str, entity_id) -> Dict[str, Any]:
        """Remove the entity together with the user account that owns it."""
        kind = get_kind(kind_name)
        doc = await self.get(kind_name, entity_id)

        await self.db[kind.collection].delete_one({"_id": doc["_id"]})
        await self.db.users.delete_many({"entity_id": doc["_id"], "entity_model": kind.model})

        if self.audit is not None:
            await self.audit.append(f"{kind_name}_deletion", str(doc["_id"]), str(doc["_id"]), doc.get("content_hash"))

        logger.info(f"[IDENTITY] Deleted {kind.model} {doc['_id']}")
        return doc
