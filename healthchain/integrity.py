# healthchain/integrity.py

import asyncio
import hashlib
import json
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from healthchain.log import get_logger

logger = get_logger(__name__)

HASH_PREFIX = "0x"
GENESIS = "GENESIS"

STATUS_COMMITTED = "committed"
STATUS_RECONCILIATION_PENDING = "reconciliation_pending"

MAX_APPEND_ATTEMPTS = 5


def utcnow() -> datetime:
    """Naive UTC timestamp at millisecond precision, the shape BSON stores."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def compute_data_hash(payload: Dict[str, Any]) -> str:
    """
    Deterministic SHA-256 fingerprint of a payload, prefixed with ``0x``.

    Keys are sorted (nested mappings included) and separators are compact, so
    the same field values always produce the same hash whatever the insertion
    order. datetime/date values are serialized as ISO-8601, anything else that
    JSON cannot represent (ObjectId, Decimal, ...) through ``str()``.

    Cyclic payloads are not supported.
    """

    def default_serializer(obj):
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return str(obj)

    raw = json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=default_serializer,
    ).encode("utf-8")
    return HASH_PREFIX + hashlib.sha256(raw).hexdigest()


class AuditChain:
    """
    Local hash-chained log of every mutation (``audit_entries`` collection).

    Each entry links to the previous one through ``prev_hash`` and is sealed by
    ``chain_hash``. Entries with status ``reconciliation_pending`` mark
    operations whose ledger side and store side disagree.
    """

    def __init__(self, db, clock=utcnow):
        self.db = db
        self.clock = clock
        self._lock = asyncio.Lock()

    async def append(
        self,
        entry_type: str,
        ref_id: str,
        subject_id: Optional[str],
        data_hash: Optional[str],
        ledger_tx_id: Optional[str] = None,
        status: str = STATUS_COMMITTED,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self.clock()

        # index allocation must not interleave between concurrent writers;
        # another process can still take the same index, so re-read and retry
        async with self._lock:
            for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
                last = await self.db.audit_entries.find_one({}, sort=[("index", -1)])

                if last is None:
                    prev_hash = GENESIS
                    next_index = 1
                else:
                    prev_hash = last.get("chain_hash", GENESIS)
                    next_index = int(last.get("index", 0)) + 1

                chain_payload = {
                    "index": next_index,
                    "entry_type": entry_type,
                    "ref_id": str(ref_id),
                    "subject_id": subject_id,
                    "timestamp": now.isoformat(),
                    "prev_hash": prev_hash,
                    "data_hash": data_hash,
                    "ledger_tx_id": ledger_tx_id,
                    "status": status,
                }
                chain_hash = compute_data_hash(chain_payload)

                entry = {
                    **chain_payload,
                    "timestamp": now,
                    "reason": reason,
                    "chain_hash": chain_hash,
                    "created_at": now,
                }
                try:
                    await self.db.audit_entries.insert_one(entry)
                    break
                except DuplicateKeyError:
                    if attempt == MAX_APPEND_ATTEMPTS:
                        logger.error(f"[LEDGER] Gave up appending {entry_type} ref_id={ref_id} after {attempt} attempts")
                        raise
                    logger.warning(f"[LEDGER] Index {next_index} taken by another writer, retrying {entry_type}")

        logger.info(
            f"[LEDGER] Appended {entry_type} ref_id={ref_id} index={next_index} "
            f"status={status} chain_hash={chain_hash[:18]}..."
        )
        return entry

    async def mark_pending(
        self,
        entry_type: str,
        ref_id: str,
        subject_id: Optional[str],
        data_hash: Optional[str],
        ledger_tx_id: Optional[str],
        reason: str,
    ) -> Dict[str, Any]:
        logger.warning(
            f"[LEDGER] Reconciliation pending for {entry_type} ref_id={ref_id} "
            f"tx={ledger_tx_id}: {reason}"
        )
        return await self.append(
            entry_type,
            ref_id,
            subject_id,
            data_hash,
            ledger_tx_id=ledger_tx_id,
            status=STATUS_RECONCILIATION_PENDING,
            reason=reason,
        )

    async def pending(self) -> List[Dict[str, Any]]:
        cursor = self.db.audit_entries.find(
            {"status": STATUS_RECONCILIATION_PENDING}
        ).sort("index", 1)
        return await cursor.to_list(length=None)

    async def verify(self) -> Optional[int]:
        """
        Walk the chain and recompute every seal.

        Returns the index of the first broken entry, or None when the chain is
        intact.
        """
        cursor = self.db.audit_entries.find({}).sort("index", 1)
        entries = await cursor.to_list(length=None)

        prev_hash = GENESIS
        for entry in entries:
            timestamp = entry.get("timestamp")
            chain_payload = {
                "index": entry.get("index"),
                "entry_type": entry.get("entry_type"),
                "ref_id": entry.get("ref_id"),
                "subject_id": entry.get("subject_id"),
                "timestamp": timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp,
                "prev_hash": entry.get("prev_hash"),
                "data_hash": entry.get("data_hash"),
                "ledger_tx_id": entry.get("ledger_tx_id"),
                "status": entry.get("status"),
            }
            if entry.get("prev_hash") != prev_hash:
                return entry.get("index")
            if compute_data_hash(chain_payload) != entry.get("chain_hash"):
                return entry.get("index")
            prev_hash = entry.get("chain_hash")
        return None


async def setup_integrity_indexes(db):
    """
    Indexes for the audit chain. Called from the FastAPI startup event.
    """
    await db.audit_entries.create_index("subject_id")
    await db.audit_entries.create_index("entry_type")
    await db.audit_entries.create_index("status")
    await db.audit_entries.create_index("index", unique=True)
