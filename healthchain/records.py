# healthchain/records.py
import re
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Tuple

from healthchain.access import AccessGuard, Caller
from healthchain.blockchain_client import LedgerGateway, SigningContext
from healthchain.config import ModeConfig
from healthchain.errors import (
    ForbiddenError,
    LedgerUnavailableError,
    MissingSignerError,
    NotFoundError,
    ValidationError,
)
from healthchain.identity import IdentityRegistrar
from healthchain.integrity import AuditChain, compute_data_hash, utcnow
from healthchain.log import get_logger
from healthchain.mongo import page_bounds, to_object_id

logger = get_logger(__name__)

CAPABILITY = "records"

ACCESS_LEVELS = ("private", "patient", "doctor", "hospital", "public")
REPORT_STATUSES = ("pending", "in_progress", "completed", "reviewed", "archived")
REPORT_TYPES = (
    "blood_test", "urine_test", "x_ray", "mri_scan", "ct_scan", "ecg", "ultrasound",
    "biopsy", "pathology", "radiology", "cardiology", "neurology", "pulmonology",
    "endocrinology", "general_lab", "other",
)
REPORT_SORT_FIELDS = ("report_date", "test_date", "created_at", "title", "status")

RECORD_CREATE_FIELDS = frozenset(
    {
        "patient_id", "doctor_id", "hospital_id", "diagnosis", "treatment",
        "prescription", "notes", "consent_scope", "access_level", "is_critical",
    }
)
RECORD_UPDATE_FIELDS = frozenset(
    {"diagnosis", "treatment", "prescription", "notes", "consent_scope", "access_level", "is_critical"}
)
RECORD_HASHED_FIELDS = (
    "patient_id", "doctor_id", "hospital_id", "diagnosis", "treatment",
    "prescription", "notes", "consent_scope", "visit_date",
)

REPORT_CREATE_FIELDS = frozenset(
    {
        "patient_id", "doctor_id", "hospital_id", "medical_record_id", "report_type",
        "title", "description", "test_date", "report_data", "results", "findings",
        "recommendations", "is_critical", "critical_values", "access_level", "tags",
        "notes", "report_file_url", "report_file_name",
    }
)
REPORT_UPDATE_FIELDS = frozenset(
    {
        "title", "description", "report_data", "results", "findings", "recommendations",
        "status", "is_critical", "critical_values", "access_level", "tags", "notes",
        "report_file_url", "report_file_name",
    }
)
REPORT_HASHED_FIELDS = (
    "report_type", "patient_id", "doctor_id", "hospital_id", "test_date",
    "report_data", "results", "findings",
)


def _hash_fields(doc: Dict[str, Any], fields) -> str:
    return compute_data_hash({f: doc.get(f) for f in fields})


def _as_datetime(value, name: str) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {value!r}") from e


def _check_fields(payload: Dict[str, Any], allowed, what: str) -> None:
    unknown = set(payload) - allowed
    if unknown:
        raise ValidationError(f"Field(s) not allowed for {what}: {', '.join(sorted(unknown))}")


def _check_choice(value, choices, name: str) -> None:
    if value is not None and value not in choices:
        raise ValidationError(f"{name} must be one of: {', '.join(choices)}")


class RecordService:
    """
    Medical records and reports.

    Documents are written to Mongo first. When the records capability is
    ledger-active the content hash is then mirrored on-chain; a failed mirror
    is logged and the document flagged ``reconciliation_pending`` instead of
    failing the request.
    """

    def __init__(
        self,
        db,
        mode: ModeConfig,
        ledger: LedgerGateway,
        identities: IdentityRegistrar,
        guard: AccessGuard,
        audit: Optional[AuditChain] = None,
        clock=utcnow,
    ):
        self.db = db
        self.mode = mode
        self.ledger = ledger
        self.identities = identities
        self.guard = guard
        self.audit = audit
        self.clock = clock

    @property
    def ledger_active(self) -> bool:
        return self.mode.blockchain_active(CAPABILITY)

    def _require_signer(self, signer: Optional[SigningContext], operation: str) -> None:
        if self.ledger_active and signer is None:
            raise MissingSignerError(f"Missing signing key for on-chain {operation}")

    async def _mirror(
        self,
        collection: str,
        doc: Dict[str, Any],
        operation: str,
        signer: Optional[SigningContext],
    ) -> Optional[str]:
        if not self.ledger_active:
            return None

        try:
            tx_id = await self.ledger.submit(operation, [doc["content_hash"]], signer)
        except LedgerUnavailableError as e:
            # the store write already happened; degrade and flag for reconciliation
            logger.warning(f"[BLOCKCHAIN] {operation} mirroring failed for {collection} {doc['_id']}: {e}")
            await self.db[collection].update_one(
                {"_id": doc["_id"]}, {"$set": {"reconciliation_pending": True}}
            )
            doc["reconciliation_pending"] = True
            if self.audit is not None:
                await self.audit.mark_pending(
                    operation, str(doc["_id"]), str(doc.get("patient_id")), doc["content_hash"], None, str(e)
                )
            return None

        await self.db[collection].update_one(
            {"_id": doc["_id"]},
            {"$set": {"ledger_tx_id": tx_id, "reconciliation_pending": False}},
        )
        doc["ledger_tx_id"] = tx_id
        doc["reconciliation_pending"] = False
        return tx_id

    async def _resolve_parties(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        parties = {}
        for kind in ("patient", "doctor", "hospital"):
            field = f"{kind}_id"
            if payload.get(field) is None:
                raise ValidationError(f"{field} is required")
            parties[field] = (await self.identities.get(kind, payload[field]))["_id"]
        return parties

    # -------------------------
    # Medical records
    # -------------------------

    async def create_record(
        self,
        payload: Dict[str, Any],
        caller: Caller,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        self.guard.require_role(caller, "doctor", "admin")
        _check_fields(payload, RECORD_CREATE_FIELDS, "medical record")
        _check_choice(payload.get("access_level"), ACCESS_LEVELS, "access_level")
        self._require_signer(signer, "registerRecord")

        parties = await self._resolve_parties(payload)
        if caller.role == "doctor":
            self.guard.require_self(caller, parties["doctor_id"])

        now = self.clock()
        draft = {
            **parties,
            "diagnosis": payload.get("diagnosis"),
            "treatment": payload.get("treatment"),
            "prescription": payload.get("prescription"),
            "notes": payload.get("notes"),
            "consent_scope": payload.get("consent_scope"),
            "visit_date": now,
        }
        content_hash = _hash_fields(draft, RECORD_HASHED_FIELDS)

        record = {
            **draft,
            "report_id": None,
            "access_level": payload.get("access_level") or "private",
            "is_critical": bool(payload.get("is_critical", False)),
            "created_by": caller.user_id,
            "updated_by": None,
            "content_hash": content_hash,
            "ledger_tx_id": None,
            "ledger_mirrored": self.ledger_active,
            "reconciliation_pending": False,
            "created_at": now,
            "updated_at": now,
        }
        await self.db.medical_records.insert_one(record)

        if self.audit is not None:
            await self.audit.append(
                "medical_record_created", str(record["_id"]), str(record["patient_id"]), content_hash
            )

        tx_id = await self._mirror("medical_records", record, "registerRecord", signer)
        return record, tx_id

    async def get_record(self, record_id, caller: Caller) -> Dict[str, Any]:
        record = await self.db.medical_records.find_one({"_id": to_object_id(record_id, "record id")})
        if record is None:
            raise NotFoundError("Record not found")
        await self.guard.authorize(caller, record)
        return record

    async def list_records(
        self,
        caller: Caller,
        patient_id=None,
        doctor_id=None,
        hospital_id=None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        skip, limit = page_bounds(page, limit)

        if patient_id is not None:
            await self.guard.authorize_patient_data(caller, patient_id)
            query = {"patient_id": to_object_id(patient_id, "patient id")}
        else:
            query = self.guard.scope_filter(caller)
        if doctor_id is not None:
            query["doctor_id"] = to_object_id(doctor_id, "doctor id")
        if hospital_id is not None:
            query["hospital_id"] = to_object_id(hospital_id, "hospital id")

        cursor = self.db.medical_records.find(query).sort("created_at", -1).skip(skip).limit(limit)
        data = await cursor.to_list(length=None)
        total = await self.db.medical_records.count_documents(query)
        return {"data": data, "page": page, "limit": limit, "total": total}

    async def update_record(self, record_id, updates: Dict[str, Any], caller: Caller) -> Dict[str, Any]:
        record = await self.get_record(record_id, caller)
        await self.guard.authorize(caller, record, write=True)

        _check_fields(updates, RECORD_UPDATE_FIELDS, "medical record update")
        _check_choice(updates.get("access_level"), ACCESS_LEVELS, "access_level")

        changes = {k: v for k, v in updates.items() if record.get(k) != v}
        if not changes:
            return record

        merged = {**record, **changes}
        if set(changes) & set(RECORD_HASHED_FIELDS):
            changes["content_hash"] = _hash_fields(merged, RECORD_HASHED_FIELDS)
        changes["updated_by"] = caller.user_id
        changes["updated_at"] = self.clock()

        await self.db.medical_records.update_one({"_id": record["_id"]}, {"$set": changes})

        if self.audit is not None and "content_hash" in changes:
            await self.audit.append(
                "medical_record_updated", str(record["_id"]), str(record["patient_id"]), changes["content_hash"]
            )
        return {**record, **changes}

    async def delete_record(self, record_id, caller: Caller) -> Dict[str, Any]:
        record = await self.db.medical_records.find_one({"_id": to_object_id(record_id, "record id")})
        if record is None:
            raise NotFoundError("Record not found")
        self.guard.authorize_delete(caller, record)

        await self.db.medical_records.delete_one({"_id": record["_id"]})
        if self.audit is not None:
            await self.audit.append(
                "medical_record_deleted", str(record["_id"]), str(record["patient_id"]), record.get("content_hash")
            )
        return record

    async def attach_report(
        self,
        record_id,
        payload: Dict[str, Any],
        caller: Caller,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        record = await self.db.medical_records.find_one({"_id": to_object_id(record_id, "record id")})
        if record is None:
            raise NotFoundError("Record not found")
        await self.guard.authorize(caller, record, write=True)

        report_payload = {
            **payload,
            "patient_id": record["patient_id"],
            "doctor_id": record["doctor_id"],
            "hospital_id": record["hospital_id"],
            "medical_record_id": record["_id"],
        }
        report, tx_id = await self.create_report(report_payload, caller, signer)

        await self.db.medical_records.update_one(
            {"_id": record["_id"]},
            {"$set": {"report_id": report["_id"], "updated_at": self.clock()}},
        )
        return report, tx_id

    # -------------------------
    # Reports
    # -------------------------

    async def create_report(
        self,
        payload: Dict[str, Any],
        caller: Caller,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        self.guard.require_role(caller, "doctor", "admin")
        _check_fields(payload, REPORT_CREATE_FIELDS, "report")
        _check_choice(payload.get("report_type"), REPORT_TYPES, "report_type")
        _check_choice(payload.get("access_level"), ACCESS_LEVELS, "access_level")
        if not payload.get("title"):
            raise ValidationError("title is required")
        self._require_signer(signer, "registerReport")

        parties = await self._resolve_parties(payload)
        if caller.role == "doctor":
            self.guard.require_self(caller, parties["doctor_id"])

        medical_record_id = None
        if payload.get("medical_record_id") is not None:
            medical_record = await self.db.medical_records.find_one(
                {"_id": to_object_id(payload["medical_record_id"], "medical record id")}
            )
            if medical_record is None:
                raise NotFoundError("Medical record not found")
            medical_record_id = medical_record["_id"]

        now = self.clock()
        report = {
            **parties,
            "medical_record_id": medical_record_id,
            "report_type": payload.get("report_type") or "other",
            "title": payload["title"],
            "description": payload.get("description") or "",
            "test_date": _as_datetime(payload.get("test_date"), "test_date"),
            "report_date": now,
            "report_data": payload.get("report_data") or {},
            "results": payload.get("results") or {},
            "findings": payload.get("findings") or "",
            "recommendations": payload.get("recommendations") or "",
            "status": "pending",
            "reviewed_by": None,
            "reviewed_date": None,
            "is_critical": bool(payload.get("is_critical", False)),
            "critical_values": payload.get("critical_values") or [],
            "access_level": payload.get("access_level") or "private",
            "tags": payload.get("tags") or [],
            "notes": payload.get("notes") or "",
            "report_file_url": payload.get("report_file_url"),
            "report_file_name": payload.get("report_file_name"),
            "created_by": caller.user_id,
            "updated_by": None,
            "ledger_tx_id": None,
            "ledger_mirrored": self.ledger_active,
            "reconciliation_pending": False,
            "created_at": now,
            "updated_at": now,
        }
        report["content_hash"] = _hash_fields(report, REPORT_HASHED_FIELDS)

        await self.db.reports.insert_one(report)

        if self.audit is not None:
            await self.audit.append(
                "report_created", str(report["_id"]), str(report["patient_id"]), report["content_hash"]
            )

        tx_id = await self._mirror("reports", report, "registerReport", signer)
        return report, tx_id

    async def _load_report(self, report_id) -> Dict[str, Any]:
        report = await self.db.reports.find_one({"_id": to_object_id(report_id, "report id")})
        if report is None:
            raise NotFoundError("Report not found")
        return report

    async def get_report(self, report_id, caller: Caller) -> Dict[str, Any]:
        report = await self._load_report(report_id)
        await self.guard.authorize(caller, report)
        return report

    async def list_reports(self, caller: Caller, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        filters = dict(filters or {})
        page = int(filters.pop("page", 1) or 1)
        limit = int(filters.pop("limit", 10) or 10)
        sort_by = filters.pop("sort_by", None) or "report_date"
        sort_order = filters.pop("sort_order", None) or "desc"
        _check_choice(sort_by, REPORT_SORT_FIELDS, "sort_by")
        _check_choice(sort_order, ("asc", "desc"), "sort_order")
        skip, limit = page_bounds(page, limit)

        query = await self._report_query(caller, filters)

        cursor = (
            self.db.reports.find(query)
            .sort(sort_by, -1 if sort_order == "desc" else 1)
            .skip(skip)
            .limit(limit)
        )
        reports = await cursor.to_list(length=None)
        total = await self.db.reports.count_documents(query)
        return {
            "reports": reports,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": -(-total // limit),
            },
        }

    async def _report_query(self, caller: Caller, filters: Dict[str, Any]) -> Dict[str, Any]:
        patient_id = filters.get("patient_id")
        if patient_id is not None:
            await self.guard.authorize_patient_data(caller, patient_id)
            query = {"patient_id": to_object_id(patient_id, "patient id")}
        else:
            query = self.guard.scope_filter(caller)

        if filters.get("doctor_id") is not None:
            query["doctor_id"] = to_object_id(filters["doctor_id"], "doctor id")
        if filters.get("hospital_id") is not None:
            query["hospital_id"] = to_object_id(filters["hospital_id"], "hospital id")
        if filters.get("report_type"):
            query["report_type"] = filters["report_type"]
        if filters.get("status"):
            query["status"] = filters["status"]
        if filters.get("is_critical") is not None:
            query["is_critical"] = bool(filters["is_critical"])

        start_date = _as_datetime(filters.get("start_date"), "start_date")
        end_date = _as_datetime(filters.get("end_date"), "end_date")
        if start_date or end_date:
            query["test_date"] = {}
            if start_date:
                query["test_date"]["$gte"] = start_date
            if end_date:
                query["test_date"]["$lte"] = end_date
        return query

    async def update_report(
        self,
        report_id,
        updates: Dict[str, Any],
        caller: Caller,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        report = await self._load_report(report_id)
        await self.guard.authorize(caller, report, write=True)

        _check_fields(updates, REPORT_UPDATE_FIELDS, "report update")
        _check_choice(updates.get("status"), REPORT_STATUSES, "status")
        _check_choice(updates.get("access_level"), ACCESS_LEVELS, "access_level")

        changes = {k: v for k, v in updates.items() if report.get(k) != v}
        hash_changed = bool(set(changes) & set(REPORT_HASHED_FIELDS))
        if hash_changed:
            self._require_signer(signer, "updateReport")
            changes["content_hash"] = _hash_fields({**report, **changes}, REPORT_HASHED_FIELDS)
        changes["updated_by"] = caller.user_id
        changes["updated_at"] = self.clock()

        await self.db.reports.update_one({"_id": report["_id"]}, {"$set": changes})
        updated = {**report, **changes}

        tx_id = None
        if hash_changed:
            if self.audit is not None:
                await self.audit.append(
                    "report_updated", str(report["_id"]), str(report["patient_id"]), changes["content_hash"]
                )
            tx_id = await self._mirror("reports", updated, "updateReport", signer)
        return updated, tx_id

    async def delete_report(
        self,
        report_id,
        caller: Caller,
        signer: Optional[SigningContext] = None,
    ) -> Optional[str]:
        report = await self._load_report(report_id)
        self.guard.authorize_delete(caller, report)
        self._require_signer(signer, "removeReport")

        await self.db.reports.delete_one({"_id": report["_id"]})
        await self.db.medical_records.update_many(
            {"report_id": report["_id"]}, {"$set": {"report_id": None}}
        )

        if self.audit is not None:
            await self.audit.append(
                "report_deleted", str(report["_id"]), str(report["patient_id"]), report.get("content_hash")
            )

        if not self.ledger_active:
            return None
        try:
            return await self.ledger.submit("removeReport", [report["content_hash"]], signer)
        except LedgerUnavailableError as e:
            logger.warning(f"[BLOCKCHAIN] removeReport mirroring failed for report {report['_id']}: {e}")
            if self.audit is not None:
                await self.audit.mark_pending(
                    "removeReport", str(report["_id"]), str(report["patient_id"]), report["content_hash"], None, str(e)
                )
            return None

    async def mark_reviewed(self, report_id, caller: Caller, review_notes: Optional[str] = None) -> Dict[str, Any]:
        if caller.role != "doctor":
            raise ForbiddenError("Only doctors can review reports")
        report = await self._load_report(report_id)

        changes = {
            "status": "reviewed",
            "reviewed_date": self.clock(),
            "reviewed_by": to_object_id(caller.entity_id, "doctor id"),
            "updated_at": self.clock(),
        }
        if review_notes:
            changes["notes"] = review_notes
        await self.db.reports.update_one({"_id": report["_id"]}, {"$set": changes})
        return {**report, **changes}

    async def mark_critical(self, report_id, caller: Caller, critical_values: Optional[List[Dict]] = None) -> Dict[str, Any]:
        if caller.role != "doctor":
            raise ForbiddenError("Only doctors can mark reports as critical")
        report = await self._load_report(report_id)

        changes = {
            "is_critical": True,
            "critical_values": critical_values or [],
            "updated_at": self.clock(),
        }
        await self.db.reports.update_one({"_id": report["_id"]}, {"$set": changes})
        return {**report, **changes}

    async def critical_reports(self, caller: Caller, hospital_id=None) -> List[Dict[str, Any]]:
        if caller.role == "hospital":
            hospital_id = caller.entity_id

        query = {"is_critical": True}
        if hospital_id is not None:
            query["hospital_id"] = to_object_id(hospital_id, "hospital id")
        elif not caller.is_admin:
            query.update(self.guard.scope_filter(caller))

        cursor = self.db.reports.find(query).sort("report_date", -1)
        return await cursor.to_list(length=None)

    async def report_stats(self, caller: Caller, start_date=None, end_date=None) -> Dict[str, Any]:
        query = self.guard.scope_filter(caller)

        start_date = _as_datetime(start_date, "start_date")
        end_date = _as_datetime(end_date, "end_date")
        if start_date or end_date:
            query["report_date"] = {}
            if start_date:
                query["report_date"]["$gte"] = start_date
            if end_date:
                query["report_date"]["$lte"] = end_date

        by_type = await self.db.reports.aggregate(
            [
                {"$match": query},
                {"$group": {"_id": "$report_type", "count": {"$sum": 1}}},
                {"$sort": {"count": -1}},
            ]
        ).to_list(length=None)

        return {
            "total_reports": await self.db.reports.count_documents(query),
            "critical_reports": await self.db.reports.count_documents({**query, "is_critical": True}),
            "pending_reports": await self.db.reports.count_documents({**query, "status": "pending"}),
            "completed_reports": await self.db.reports.count_documents({**query, "status": "completed"}),
            "reports_by_type": [{"report_type": r["_id"], "count": r["count"]} for r in by_type],
        }

    async def search_reports(
        self,
        term: str,
        caller: Caller,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if not term:
            raise ValidationError("Search term is required")
        filters = filters or {}

        pattern = {"$regex": re.escape(term), "$options": "i"}
        query = {
            **self.guard.scope_filter(caller),
            "$or": [
                {"title": pattern},
                {"description": pattern},
                {"findings": pattern},
                {"recommendations": pattern},
                {"notes": pattern},
                {"tags": pattern},
            ],
        }
        if filters.get("report_type"):
            query["report_type"] = filters["report_type"]
        if filters.get("status"):
            query["status"] = filters["status"]
        if filters.get("is_critical") is not None:
            query["is_critical"] = bool(filters["is_critical"])

        cursor = self.db.reports.find(query).sort("report_date", -1).limit(int(filters.get("limit") or 20))
        return await cursor.to_list(length=None)
