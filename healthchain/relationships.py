# healthchain/relationships.py
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from healthchain.blockchain_client import LedgerGateway, SigningContext
from healthchain.config import ModeConfig
from healthchain.errors import (
    AlreadyInactiveError,
    DuplicateRelationshipError,
    NotFoundError,
    ValidationError,
)
from healthchain.identity import IdentityRegistrar
from healthchain.integrity import AuditChain, compute_data_hash, utcnow
from healthchain.log import get_logger
from healthchain.mongo import page_bounds, to_object_id
from healthchain.storage import KeyedLocks

logger = get_logger(__name__)

# relationships ride on the consent capability flag
CAPABILITY = "consent"

RELATIONSHIP_TYPES = ("primary_care", "specialist", "consultant", "emergency")

DOCTOR_PROJECTION = {
    "full_name": 1, "license_number": 1, "specialization": 1,
    "contact_number": 1, "email": 1, "years_of_experience": 1,
}
PATIENT_PROJECTION = {
    "full_name": 1, "dob": 1, "contact_number": 1, "email": 1,
    "address": 1, "emergency_contact": 1,
}
HOSPITAL_PROJECTION = {"name": 1, "address": 1, "contact_number": 1, "type": 1}


class RelationshipLifecycle:
    """
    Patient-doctor-hospital care relationships.

    At most one active relationship per (patient, doctor). Creation is
    serialized per pair in-process; the partial unique index on
    (patient_id, doctor_id, is_active=true) backs that up across processes.
    Ending is terminal: a new relationship must be created instead.
    """

    def __init__(
        self,
        db,
        mode: ModeConfig,
        ledger: LedgerGateway,
        identities: IdentityRegistrar,
        audit: Optional[AuditChain] = None,
        clock=utcnow,
    ):
        self.db = db
        self.mode = mode
        self.ledger = ledger
        self.identities = identities
        self.audit = audit
        self.clock = clock
        self._pair_locks = KeyedLocks()

    @property
    def ledger_active(self) -> bool:
        return self.mode.blockchain_active(CAPABILITY)

    async def create(
        self,
        patient_id,
        doctor_id,
        hospital_id,
        relationship_type: Optional[str] = None,
        notes: Optional[str] = None,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        relationship_type = relationship_type or "primary_care"
        if relationship_type not in RELATIONSHIP_TYPES:
            raise ValidationError(
                f"relationship_type must be one of: {', '.join(RELATIONSHIP_TYPES)}"
            )

        patient_oid = to_object_id(patient_id, "patient id")
        doctor_oid = to_object_id(doctor_id, "doctor id")
        hospital_oid = to_object_id(hospital_id, "hospital id")

        async with self._pair_locks.hold(f"{patient_oid}:{doctor_oid}"):
            existing = await self.db.relationships.find_one(
                {"patient_id": patient_oid, "doctor_id": doctor_oid, "is_active": True}
            )
            if existing:
                raise DuplicateRelationshipError(
                    "Relationship already exists between this patient and doctor"
                )

            await self.identities.get("patient", patient_oid)
            await self.identities.get("doctor", doctor_oid)
            await self.identities.get("hospital", hospital_oid)

            now = self.clock()
            content_hash = compute_data_hash(
                {
                    "patient_id": str(patient_oid),
                    "doctor_id": str(doctor_oid),
                    "hospital_id": str(hospital_oid),
                    "relationship_type": relationship_type,
                    "timestamp": int(now.timestamp() * 1000),
                }
            )

            tx_id = None
            if self.ledger_active:
                tx_id = await self.ledger.submit("createRelationship", [content_hash], signer)

            relationship = {
                "patient_id": patient_oid,
                "doctor_id": doctor_oid,
                "hospital_id": hospital_oid,
                "relationship_type": relationship_type,
                "start_date": now,
                "end_date": None,
                "is_active": True,
                "notes": notes or "",
                "content_hash": content_hash,
                "ledger_tx_id": tx_id,
                "ledger_mirrored": self.ledger_active,
                "created_at": now,
                "updated_at": now,
            }

            try:
                await self.db.relationships.insert_one(relationship)
            except DuplicateKeyError as e:
                raise DuplicateRelationshipError(
                    "Relationship already exists between this patient and doctor"
                ) from e

        if self.audit is not None:
            await self.audit.append(
                "relationship_created", str(relationship["_id"]), str(patient_oid), content_hash, ledger_tx_id=tx_id
            )

        logger.info(f"[RELATIONSHIP] Created {relationship['_id']} patient={patient_oid} doctor={doctor_oid}")
        return relationship, tx_id

    async def get(self, relationship_id) -> Dict[str, Any]:
        relationship = await self.db.relationships.find_one(
            {"_id": to_object_id(relationship_id, "relationship id")}
        )
        if relationship is None:
            raise NotFoundError("Relationship not found")
        return relationship

    async def end(
        self,
        relationship_id,
        signer: Optional[SigningContext] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        relationship = await self.get(relationship_id)
        if not relationship.get("is_active"):
            raise AlreadyInactiveError("Relationship is already inactive")

        tx_id = None
        if self.ledger_active:
            tx_id = await self.ledger.submit("endRelationship", [relationship["content_hash"]], signer)

        now = self.clock()
        changes = {"is_active": False, "end_date": now, "updated_at": now}
        if tx_id:
            changes["ledger_tx_id"] = tx_id

        # conditional on is_active so two concurrent ends cannot both win
        result = await self.db.relationships.update_one(
            {"_id": relationship["_id"], "is_active": True}, {"$set": changes}
        )
        if result.modified_count == 0:
            raise AlreadyInactiveError("Relationship is already inactive")

        if self.audit is not None:
            await self.audit.append(
                "relationship_ended",
                str(relationship["_id"]),
                str(relationship["patient_id"]),
                relationship.get("content_hash"),
                ledger_tx_id=tx_id,
            )

        return {**relationship, **changes}, tx_id

    async def update_notes(self, relationship_id, notes: str) -> Dict[str, Any]:
        relationship = await self.get(relationship_id)
        changes = {"notes": notes or "", "updated_at": self.clock()}
        await self.db.relationships.update_one({"_id": relationship["_id"]}, {"$set": changes})
        return {**relationship, **changes}

    async def _find_one(self, collection: str, _id, projection: Dict[str, int]):
        if _id is None:
            return None
        return await self.db[collection].find_one({"_id": _id}, projection)

    async def patient_doctors(self, patient_id, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        query = {"patient_id": to_object_id(patient_id, "patient id"), "is_active": True}
        cursor = self.db.relationships.find(query).sort("start_date", -1).skip(offset).limit(limit)
        relationships = await cursor.to_list(length=None)
        total = await self.db.relationships.count_documents(query)

        data = []
        for rel in relationships:
            data.append(
                {
                    "relationship_id": rel["_id"],
                    "relationship_type": rel.get("relationship_type"),
                    "start_date": rel.get("start_date"),
                    "notes": rel.get("notes"),
                    "doctor": await self._find_one("doctors", rel.get("doctor_id"), DOCTOR_PROJECTION),
                    "hospital": await self._find_one("hospitals", rel.get("hospital_id"), HOSPITAL_PROJECTION),
                    "is_active": rel.get("is_active"),
                }
            )
        return {"data": data, "total": total}

    async def doctor_patients(self, doctor_id, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        query = {"doctor_id": to_object_id(doctor_id, "doctor id"), "is_active": True}
        cursor = self.db.relationships.find(query).sort("start_date", -1).skip(offset).limit(limit)
        relationships = await cursor.to_list(length=None)
        total = await self.db.relationships.count_documents(query)

        data = []
        for rel in relationships:
            data.append(
                {
                    "relationship_id": rel["_id"],
                    "relationship_type": rel.get("relationship_type"),
                    "start_date": rel.get("start_date"),
                    "notes": rel.get("notes"),
                    "patient": await self._find_one("patients", rel.get("patient_id"), PATIENT_PROJECTION),
                    "hospital": await self._find_one("hospitals", rel.get("hospital_id"), HOSPITAL_PROJECTION),
                    "is_active": rel.get("is_active"),
                }
            )
        return {"data": data, "total": total}

    async def relationship_records(self, patient_id, doctor_id) -> List[Dict[str, Any]]:
        cursor = self.db.medical_records.find(
            {
                "patient_id": to_object_id(patient_id, "patient id"),
                "doctor_id": to_object_id(doctor_id, "doctor id"),
            }
        ).sort("created_at", -1)
        return await cursor.to_list(length=None)

    async def relationship_reports(self, patient_id, doctor_id) -> List[Dict[str, Any]]:
        records = await self.relationship_records(patient_id, doctor_id)
        by_record = {r["_id"]: r for r in records}
        if not by_record:
            return []

        cursor = self.db.reports.find({"medical_record_id": {"$in": list(by_record)}})
        reports = await cursor.to_list(length=None)

        out = [
            {
                "record_id": report["medical_record_id"],
                "record_diagnosis": by_record[report["medical_record_id"]].get("diagnosis"),
                "report_id": report["_id"],
                "report_type": report.get("report_type"),
                "title": report.get("title"),
                "report_data": report.get("report_data"),
                "created_at": report.get("created_at"),
            }
            for report in reports
        ]
        return sorted(out, key=lambda r: r["created_at"], reverse=True)

    async def _pair_bundle(self, patient_id, doctor_id, counterpart: str) -> Dict[str, Any]:
        relationship = await self.db.relationships.find_one(
            {
                "patient_id": to_object_id(patient_id, "patient id"),
                "doctor_id": to_object_id(doctor_id, "doctor id"),
                "is_active": True,
            }
        )
        if relationship is None:
            raise NotFoundError("No active relationship found between patient and doctor")

        records = await self.relationship_records(patient_id, doctor_id)
        reports = await self.relationship_reports(patient_id, doctor_id)

        if counterpart == "patient":
            other = await self._find_one("patients", relationship["patient_id"], PATIENT_PROJECTION)
        else:
            other = await self._find_one("doctors", relationship["doctor_id"], DOCTOR_PROJECTION)

        start_date = relationship["start_date"]
        return {
            "relationship": {
                "relationship_id": relationship["_id"],
                "relationship_type": relationship.get("relationship_type"),
                "start_date": start_date,
                "notes": relationship.get("notes"),
                "hospital": await self._find_one("hospitals", relationship.get("hospital_id"), HOSPITAL_PROJECTION),
            },
            counterpart: other,
            "medical_records": records,
            "reports": reports,
            "summary": {
                "total_records": len(records),
                "total_reports": len(reports),
                "last_visit": records[0].get("created_at") if records else None,
                "relationship_duration_seconds": int((self.clock() - start_date).total_seconds()),
            },
        }

    async def doctor_patient_data(self, doctor_id, patient_id) -> Dict[str, Any]:
        """Everything a doctor sees about one of their patients."""
        return await self._pair_bundle(patient_id, doctor_id, "patient")

    async def patient_doctor_data(self, patient_id, doctor_id) -> Dict[str, Any]:
        return await self._pair_bundle(patient_id, doctor_id, "doctor")

    async def stats(self, entity_id, role: str) -> Dict[str, Any]:
        if role == "patient":
            cursor = self.db.relationships.find(
                {"patient_id": to_object_id(entity_id, "patient id"), "is_active": True}
            )
            relationships = await cursor.to_list(length=None)
            doctors = []
            for rel in relationships:
                doctor = await self._find_one("doctors", rel["doctor_id"], DOCTOR_PROJECTION) or {}
                doctors.append(
                    {
                        "doctor_id": rel["doctor_id"],
                        "doctor_name": doctor.get("full_name"),
                        "specialization": doctor.get("specialization"),
                        "relationship_type": rel.get("relationship_type"),
                        "start_date": rel.get("start_date"),
                    }
                )
            return {"total_doctors": len(doctors), "doctors": doctors}

        if role == "doctor":
            cursor = self.db.relationships.find(
                {"doctor_id": to_object_id(entity_id, "doctor id"), "is_active": True}
            )
            relationships = await cursor.to_list(length=None)
            patients = []
            for rel in relationships:
                patient = await self._find_one("patients", rel["patient_id"], PATIENT_PROJECTION) or {}
                patients.append(
                    {
                        "patient_id": rel["patient_id"],
                        "patient_name": patient.get("full_name"),
                        "dob": patient.get("dob"),
                        "relationship_type": rel.get("relationship_type"),
                        "start_date": rel.get("start_date"),
                    }
                )
            return {"total_patients": len(patients), "patients": patients}

        return {}
