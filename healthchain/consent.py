# healthchain/consent.py
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from healthchain.blockchain_client import (
    LedgerGateway,
    SigningContext,
    text_id,
    to_ledger_address,
)
from healthchain.config import ModeConfig
from healthchain.errors import ConsentEnumerationUnavailableError, ValidationError
from healthchain.integrity import AuditChain, utcnow
from healthchain.log import get_logger
from healthchain.storage import KeyValueStore

logger = get_logger(__name__)

CAPABILITY = "consent"
MEDICAL_RECORDS_SCOPE = "medical_records"


def consent_key(patient_address: str, grantee_address: str, scope: str) -> str:
    return f"{patient_address}:{grantee_address}:{scope}"


def _require(value, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value


class ConsentEngine:
    """
    Grant / revoke / check of data-sharing permissions per
    (patient, grantee, scope).

    When the consent capability is ledger-active the contract is authoritative
    for checks and the local store acts as a cache. Expiry is evaluated on
    read: an expired grant is deleted the first time somebody looks at it.
    """

    def __init__(
        self,
        mode: ModeConfig,
        ledger: LedgerGateway,
        store: KeyValueStore,
        audit: Optional[AuditChain] = None,
        clock=utcnow,
    ):
        self.mode = mode
        self.ledger = ledger
        self.store = store
        self.audit = audit
        self.clock = clock

    @property
    def ledger_active(self) -> bool:
        return self.mode.blockchain_active(CAPABILITY)

    async def grant(
        self,
        patient_address: str,
        grantee_address: str,
        scope: str,
        duration_days: int,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        _require(patient_address, "patient_address")
        _require(grantee_address, "grantee_address")
        _require(scope, "scope")
        if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0:
            raise ValidationError("duration_days must be a positive integer")

        tx_id = None
        if self.ledger_active:
            # confirmation can take a while: no store lock held here
            tx_id = await self.ledger.submit(
                "grantConsent",
                [to_ledger_address(grantee_address), text_id(scope), duration_days],
                signer,
            )

        granted_at = self.clock()
        grant = {
            "patient_address": patient_address,
            "grantee_address": grantee_address,
            "scope": scope,
            "duration_days": duration_days,
            "granted_at": granted_at,
            "expires_at": granted_at + timedelta(days=duration_days),
            "ledger_tx_id": tx_id,
            "ledger_mirrored": self.ledger_active,
        }

        key = consent_key(patient_address, grantee_address, scope)
        try:
            async with self.store.lock(key):
                await self.store.set(key, grant)
        except Exception as e:
            if tx_id is not None and self.audit is not None:
                await self.audit.mark_pending("consent_grant", key, patient_address, None, tx_id, str(e))
            raise

        if self.audit is not None:
            await self.audit.append("consent_grant", key, patient_address, None, ledger_tx_id=tx_id)

        logger.info(f"[CONSENT] Granted {scope} on {patient_address} to {grantee_address} for {duration_days}d")
        return grant, tx_id

    async def revoke(
        self,
        patient_address: str,
        grantee_address: str,
        scope: str,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[bool, Optional[str]]:
        _require(patient_address, "patient_address")
        _require(grantee_address, "grantee_address")
        _require(scope, "scope")

        tx_id = None
        if self.ledger_active:
            tx_id = await self.ledger.submit(
                "revokeConsent",
                [to_ledger_address(grantee_address), text_id(scope)],
                signer,
            )

        key = consent_key(patient_address, grantee_address, scope)
        try:
            async with self.store.lock(key):
                existed = await self.store.delete(key)
        except Exception as e:
            if tx_id is not None and self.audit is not None:
                await self.audit.mark_pending("consent_revoke", key, patient_address, None, tx_id, str(e))
            raise

        if self.audit is not None:
            await self.audit.append("consent_revoke", key, patient_address, None, ledger_tx_id=tx_id)

        if existed:
            logger.info(f"[CONSENT] Revoked {scope} on {patient_address} from {grantee_address}")
        return True, tx_id

    async def check(self, patient_address: str, requester_address: str, scope: str) -> bool:
        if self.ledger_active:
            allowed = await self.ledger.call(
                "isAllowed",
                [
                    to_ledger_address(patient_address),
                    to_ledger_address(requester_address),
                    text_id(scope),
                ],
            )
            return bool(allowed)

        key = consent_key(patient_address, requester_address, scope)
        async with self.store.lock(key):
            grant = await self.store.get(key)
            if grant is None:
                return False

            if self.clock() > grant["expires_at"]:
                await self.store.delete(key)
                logger.info(f"[CONSENT] Expired grant removed: {key}")
                return False

            return True

    async def list_all(self, patient_address: str) -> List[Dict[str, Any]]:
        if self.ledger_active:
            # the contract exposes no enumeration
            raise ConsentEnumerationUnavailableError(
                "Listing consents is not available while the ledger is authoritative"
            )

        grants = []
        now = self.clock()
        for key, grant in await self.store.items(prefix=patient_address + ":"):
            if now > grant["expires_at"]:
                async with self.store.lock(key):
                    current = await self.store.get(key)
                    if current is not None and self.clock() > current["expires_at"]:
                        await self.store.delete(key)
                continue
            grants.append(grant)
        return grants

    async def status(self, patient_address: str, requester_address: str, scope: str) -> Dict[str, Any]:
        allowed = await self.check(patient_address, requester_address, scope)

        if self.ledger_active:
            return {"allowed": allowed, "ledger_mirrored": True}

        grant = None
        if allowed:
            grant = await self.store.get(consent_key(patient_address, requester_address, scope))
        return {"allowed": allowed, "consent": grant, "ledger_mirrored": False}
