# healthchain/access.py
from dataclasses import dataclass
from typing import Any, Dict, Optional

from healthchain.consent import MEDICAL_RECORDS_SCOPE, ConsentEngine
from healthchain.errors import ConsentRequiredError, ForbiddenError, ValidationError
from healthchain.log import get_logger
from healthchain.mongo import to_object_id

logger = get_logger(__name__)

ROLES = ("patient", "doctor", "hospital", "admin")

# role -> field of a clinical document that points at the caller's entity
OWNER_FIELDS = {
    "patient": "patient_id",
    "doctor": "doctor_id",
    "hospital": "hospital_id",
}


@dataclass(frozen=True)
class Caller:
    """An already authenticated user, as resolved from the bearer token."""

    user_id: str
    role: str
    entity_id: Optional[str] = None
    wallet_address: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _same(a, b) -> bool:
    return a is not None and b is not None and str(a) == str(b)


class AccessGuard:
    """
    Decides whether a caller may read or write a clinical document.

    Precedence: admin, then owner match on the caller's role field, then (for
    doctors and hospitals reading patient data) a live ``medical_records``
    consent from the patient. Writes never fall back to consent.
    """

    def __init__(self, consent: ConsentEngine, db=None):
        self.consent = consent
        self.db = db

    def require_role(self, caller: Caller, *roles: str) -> None:
        if caller.role not in roles:
            raise ForbiddenError("Insufficient permissions")

    def require_self(self, caller: Caller, entity_id) -> None:
        if caller.is_admin or _same(caller.entity_id, entity_id):
            return
        raise ForbiddenError("Access denied: you can only access your own resources")

    def is_owner(self, caller: Caller, resource: Dict[str, Any]) -> bool:
        field = OWNER_FIELDS.get(caller.role)
        return field is not None and _same(caller.entity_id, resource.get(field))

    async def _patient_wallet(self, patient_id) -> Optional[str]:
        if self.db is None:
            return None
        try:
            oid = to_object_id(patient_id, "patient id")
        except ValidationError:
            return None
        patient = await self.db.patients.find_one({"_id": oid}, {"wallet_address": 1})
        return (patient or {}).get("wallet_address")

    async def has_consent(self, caller: Caller, patient_id) -> bool:
        if not caller.wallet_address:
            return False

        # grants are keyed by the patient id, or by the wallet once on-chain
        subjects = []
        if not self.consent.ledger_active:
            subjects.append(str(patient_id))
        wallet = await self._patient_wallet(patient_id)
        if wallet:
            subjects.append(wallet)

        for subject in subjects:
            if await self.consent.check(subject, caller.wallet_address, MEDICAL_RECORDS_SCOPE):
                return True
        return False

    async def authorize(self, caller: Caller, resource: Dict[str, Any], write: bool = False) -> None:
        if caller.is_admin:
            return

        if self.is_owner(caller, resource):
            return

        if not write and caller.role in ("doctor", "hospital") and resource.get("patient_id") is not None:
            if await self.has_consent(caller, resource["patient_id"]):
                return
            logger.warning(
                f"[ACCESS] {caller.role} {caller.entity_id} denied on patient "
                f"{resource['patient_id']}: no consent"
            )
            raise ConsentRequiredError("Access denied: no consent to access patient data")

        raise ForbiddenError("Access denied")

    async def authorize_patient_data(self, caller: Caller, patient_id) -> None:
        """Gate for endpoints that expose everything about one patient."""
        if caller.is_admin:
            return

        if caller.role == "patient":
            if _same(caller.entity_id, patient_id):
                return
            raise ForbiddenError("Access denied: you can only access your own resources")

        if caller.role in ("doctor", "hospital"):
            if await self.has_consent(caller, patient_id):
                return
            raise ConsentRequiredError("Access denied: no consent to access patient data")

        raise ForbiddenError("Access denied")

    def authorize_delete(self, caller: Caller, resource: Dict[str, Any]) -> None:
        if caller.is_admin or _same(caller.user_id, resource.get("created_by")):
            return
        raise ForbiddenError("Access denied: only an admin or the creator can delete")

    def scope_filter(self, caller: Caller) -> Dict[str, Any]:
        """Query fragment restricting a listing to the caller's own documents."""
        if caller.is_admin:
            return {}
        field = OWNER_FIELDS.get(caller.role)
        if field is None or caller.entity_id is None:
            raise ForbiddenError("Access denied")
        return {field: to_object_id(caller.entity_id, "entity id")}
