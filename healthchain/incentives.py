# healthchain/incentives.py
from typing import Any, Dict, List, Optional, Tuple

from healthchain.blockchain_client import (
    LedgerGateway,
    SigningContext,
    text_id,
    to_ledger_address,
)
from healthchain.config import ModeConfig
from healthchain.errors import MissingSignerError, ValidationError
from healthchain.integrity import AuditChain, utcnow
from healthchain.log import get_logger
from healthchain.storage import KeyValueStore

logger = get_logger(__name__)

CAPABILITY = "incentives"


def _validate(patient_address, rule_id, amount) -> float:
    if not isinstance(patient_address, str) or not patient_address.strip():
        raise ValidationError("patient_address is required")
    if not isinstance(rule_id, str) or not rule_id.strip():
        raise ValidationError("rule_id is required")
    if amount is None:
        return 0
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
        raise ValidationError("amount must be a non-negative number")
    return amount


class IncentiveLedger:
    """
    Append-only log of incentive payouts, keyed ``patient:rule:timestamp_ms``.

    On-chain payouts are signed by the server key (HOSPITAL_PRIVATE_KEY), never
    by the caller.
    """

    def __init__(
        self,
        mode: ModeConfig,
        ledger: LedgerGateway,
        store: KeyValueStore,
        server_signer: Optional[SigningContext] = None,
        audit: Optional[AuditChain] = None,
        clock=utcnow,
    ):
        self.mode = mode
        self.ledger = ledger
        self.store = store
        self.server_signer = server_signer
        self.audit = audit
        self.clock = clock

    @property
    def ledger_active(self) -> bool:
        return self.mode.blockchain_active(CAPABILITY)

    async def payout(
        self,
        patient_address: str,
        rule_id: str,
        amount=None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        amount = _validate(patient_address, rule_id, amount)

        tx_id = None
        if self.ledger_active:
            if self.server_signer is None:
                raise MissingSignerError("Server hospital signer not configured. Set HOSPITAL_PRIVATE_KEY.")
            tx_id = await self.ledger.submit(
                "payout",
                [to_ledger_address(patient_address), text_id(rule_id)],
                self.server_signer,
            )

        paid_at = self.clock()
        payout = {
            "patient_address": patient_address,
            "rule_id": rule_id,
            "amount": amount,
            "paid_at": paid_at,
            "ledger_tx_id": tx_id,
            "ledger_mirrored": self.ledger_active,
        }

        timestamp_ms = int(paid_at.timestamp() * 1000)
        prefix = f"{patient_address}:{rule_id}:"
        try:
            async with self.store.lock(prefix):
                # two payouts in the same millisecond must not overwrite each other
                key = f"{prefix}{timestamp_ms}"
                while await self.store.get(key) is not None:
                    timestamp_ms += 1
                    key = f"{prefix}{timestamp_ms}"
                await self.store.set(key, payout)
        except Exception as e:
            if tx_id is not None and self.audit is not None:
                await self.audit.mark_pending("incentive_payout", prefix, patient_address, None, tx_id, str(e))
            raise

        if self.audit is not None:
            await self.audit.append("incentive_payout", key, patient_address, None, ledger_tx_id=tx_id)

        logger.info(f"[INCENTIVE] Paid {amount} to {patient_address} for rule {rule_id}")
        return payout, tx_id

    async def history(self, patient_address: str) -> List[Dict[str, Any]]:
        return [p for _, p in await self.store.items(prefix=patient_address + ":")]

    async def all_payouts(self) -> List[Dict[str, Any]]:
        return [p for _, p in await self.store.items()]

    async def status(self, patient_address: str, rule_id: str) -> Dict[str, Any]:
        # exact prefix: "0xab" must not match payouts of "0xabc"
        matches = await self.store.items(prefix=f"{patient_address}:{rule_id}:")
        if not matches:
            return {"paid": False, "ledger_mirrored": self.ledger_active}
        _, latest = matches[-1]
        return {"paid": True, "incentive": latest, "ledger_mirrored": self.ledger_active}

    def simulate(self, patient_address: str, rule_id: str, amount=None) -> Dict[str, Any]:
        amount = _validate(patient_address, rule_id, amount)
        would_succeed = not (self.ledger_active and self.server_signer is None)
        return {
            "patient_address": patient_address,
            "rule_id": rule_id,
            "amount": amount,
            "would_succeed": would_succeed,
            "ledger_mirrored": self.ledger_active,
        }
