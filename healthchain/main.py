# healthchain/main.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError as SchemaError

from healthchain.access import Caller
from healthchain.base_model_classes import *
from healthchain.blockchain_client import SigningContext
from healthchain.config import get_mode_config, settings
from healthchain.container import Services, build_services
from healthchain.errors import ForbiddenError, HealthchainError, ValidationError
from healthchain.identity import ENTITY_KINDS
from healthchain.integrity import setup_integrity_indexes
from healthchain.log import get_logger, setup_logging
from healthchain.mongo import serialize_doc

logger = get_logger(__name__)

# -------------------------
# FastAPI app + Mongo client
# -------------------------

app = FastAPI(title="Healthchain backend")

mongo_client: AsyncIOMotorClient | None = None
services: Services | None = None


async def setup_indexes(db):
    await db.users.create_index("email", unique=True)
    await db.patients.create_index("email", unique=True, sparse=True)
    await db.doctors.create_index("email", unique=True, sparse=True)
    await db.doctors.create_index("license_number", unique=True, sparse=True)
    await db.hospitals.create_index("email", unique=True, sparse=True)
    await db.hospitals.create_index("registration_number", unique=True, sparse=True)
    # at most one active relationship per pair
    await db.relationships.create_index(
        [("patient_id", 1), ("doctor_id", 1)],
        unique=True,
        partialFilterExpression={"is_active": True},
    )
    await db.relationships.create_index([("doctor_id", 1), ("is_active", 1)])
    await db.medical_records.create_index([("patient_id", 1), ("created_at", -1)])
    await db.medical_records.create_index("doctor_id")
    await db.reports.create_index([("patient_id", 1), ("report_date", -1)])
    await db.reports.create_index([("hospital_id", 1), ("is_critical", 1)])
    await db.reports.create_index("medical_record_id")
    await setup_integrity_indexes(db)


@app.on_event("startup")
async def startup_event():
    global mongo_client, services
    setup_logging()

    mongo_client = AsyncIOMotorClient(settings.mongodb_uri)
    db = mongo_client[settings.mongodb_db]
    await setup_indexes(db)

    mode = get_mode_config()
    services = build_services(db, settings, mode)
    logger.info(f"[STARTUP] Blockchain mode: {mode.mode.value}")


@app.on_event("shutdown")
async def shutdown_event():
    global mongo_client
    if mongo_client is not None:
        mongo_client.close()


@app.exception_handler(HealthchainError)
async def healthchain_error_handler(request: Request, exc: HealthchainError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    content = {"ok": False, "message": exc.message}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


# -------------------------
# Dependencies
# -------------------------

def get_services() -> Services:
    if services is None:
        raise RuntimeError("Services are not initialized")
    return services


async def get_caller(
    authorization: Optional[str] = Header(None),
    svc: Services = Depends(get_services),
) -> Caller:
    return await svc.auth.resolve_caller(authorization or "")


def get_signer(x_user_private_key: Optional[str] = Header(None)) -> Optional[SigningContext]:
    # compatibility shim: clients forward a raw key for ledger-mutating calls
    return SigningContext.from_header(x_user_private_key)


def require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise ForbiddenError("Admin access required")


def docs(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in items]


def validate_profile(kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return ENTITY_SCHEMAS[kind](**data).model_dump(exclude_none=True)
    except SchemaError as e:
        raise ValidationError(f"Invalid {kind} profile", details={"errors": e.errors(include_url=False, include_context=False)}) from e


def validate_profile_update(kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return ENTITY_UPDATE_SCHEMAS[kind](**data).model_dump(exclude_unset=True)
    except SchemaError as e:
        raise ValidationError(f"Invalid {kind} update", details={"errors": e.errors(include_url=False, include_context=False)}) from e


def check_kind(kind: str) -> str:
    if kind not in ENTITY_KINDS:
        raise ValidationError(f"Unknown entity type: {kind}")
    return kind


# -------------------------
# Healthcheck / status
# -------------------------

@app.get("/health")
async def health():
    db = mongo_client[settings.mongodb_db] if mongo_client is not None else None
    if db is not None:
        await db.command("ping")
    return {"status": "ok"}


@app.get("/api/status")
async def status(svc: Services = Depends(get_services)):
    return {
        "ok": True,
        "message": "Healthchain backend running",
        "mode": svc.mode.as_dict(),
        "reconciliation_pending": len(await svc.audit.pending()),
    }


@app.get("/api/blockchain-config")
async def blockchain_config(svc: Services = Depends(get_services)):
    # which settings are present, never their values
    return {
        "ok": True,
        "mode": svc.mode.mode.value,
        "features": svc.mode.as_dict()["features"],
        "rpc_configured": bool(settings.rpc_url),
        "contracts": {
            "identity_registry": bool(settings.identity_registry_address),
            "consent_manager": bool(settings.consent_manager_address),
            "incentive_vault": bool(settings.incentive_vault_address),
        },
        "server_signer_configured": bool(settings.hospital_private_key),
    }


# -------------------------
# Auth
# -------------------------

@app.post("/api/auth/register", status_code=201)
async def register(
    payload: RegisterIn,
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    if payload.role not in ENTITY_SCHEMAS:
        raise ValidationError("Invalid role")
    profile = validate_profile(payload.role, {"email": payload.email, **payload.profile})

    result = await svc.auth.register(payload.role, payload.email, payload.password, profile, signer)
    return {
        "ok": True,
        "token": result["token"],
        "user": serialize_doc(result["user"]),
        "entity": serialize_doc(result["entity"]),
        "ledger_tx_id": result["ledger_tx_id"],
        "ledger_mirrored": svc.identities.ledger_active,
        "expires_in": result["expires_in"],
    }


@app.post("/api/auth/login")
async def login(payload: LoginIn, svc: Services = Depends(get_services)):
    result = await svc.auth.login(payload.email, payload.password)
    return {
        "ok": True,
        "token": result["token"],
        "user": serialize_doc(result["user"]),
        "entity": serialize_doc(result["entity"]),
        "expires_in": result["expires_in"],
    }


@app.get("/api/auth/me")
async def me(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    result = await svc.auth.get_current_user(caller.user_id)
    return {"ok": True, "user": serialize_doc(result["user"]), "entity": serialize_doc(result["entity"])}


@app.post("/api/auth/change-password")
async def change_password(
    payload: ChangePasswordIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    await svc.auth.change_password(caller.user_id, payload.current_password, payload.new_password)
    return {"ok": True, "message": "Password changed successfully"}


@app.patch("/api/auth/profile")
async def update_user_profile(
    payload: UserProfileUpdateIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    user = await svc.auth.update_profile(caller.user_id, payload.email, payload.wallet_address)
    return {"ok": True, "user": serialize_doc(user)}


@app.post("/api/auth/users/{user_id}/unlock")
async def unlock_user(user_id: str, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    require_admin(caller)
    user = await svc.auth.unlock(user_id)
    return {"ok": True, "user": serialize_doc(user)}


@app.delete("/api/auth/users/{user_id}")
async def delete_user(user_id: str, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    if not caller.is_admin and caller.user_id != user_id:
        raise ForbiddenError("Access denied: you can only delete your own account")
    await svc.auth.delete_account(user_id)
    return {"ok": True, "message": "Account deleted"}


# -------------------------
# Identity
# -------------------------

@app.post("/api/identity/{kind}", status_code=201)
async def register_entity(
    kind: str,
    payload: Dict[str, Any],
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    require_admin(caller)
    check_kind(kind)
    profile = validate_profile(kind, payload)

    entity, tx_id = await svc.identities.register(kind, profile, signer)
    return {
        "ok": True,
        "entity": serialize_doc(entity),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": entity["ledger_mirrored"],
    }


@app.get("/api/identity/{kind}")
async def list_entities(
    kind: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    if check_kind(kind) == "patient":
        require_admin(caller)
    result = await svc.identities.list(kind, page, limit)
    return {"ok": True, **result, "data": docs(result["data"])}


@app.get("/api/identity/{kind}/{entity_id}")
async def get_entity(
    kind: str,
    entity_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    if check_kind(kind) == "patient":
        await svc.guard.authorize_patient_data(caller, entity_id)
    entity = await svc.identities.get(kind, entity_id)
    return {"ok": True, "entity": serialize_doc(entity)}


@app.patch("/api/identity/{kind}/{entity_id}")
async def update_entity(
    kind: str,
    entity_id: str,
    payload: Dict[str, Any],
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    check_kind(kind)
    if not caller.is_admin and caller.role != kind:
        raise ForbiddenError("Access denied")
    svc.guard.require_self(caller, entity_id)
    updates = validate_profile_update(kind, payload)

    entity = await svc.identities.update_profile(kind, entity_id, updates)
    return {"ok": True, "entity": serialize_doc(entity)}


@app.delete("/api/identity/{kind}/{entity_id}")
async def delete_entity(
    kind: str,
    entity_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    require_admin(caller)
    check_kind(kind)
    await svc.identities.delete(kind, entity_id)
    return {"ok": True, "message": f"{ENTITY_KINDS[kind].model} deleted"}


# -------------------------
# Consent
# -------------------------

def require_patient_subject(caller: Caller, patient_address: str) -> None:
    """Only the patient (by entity id or wallet) or an admin acts on a patient's grants."""
    if caller.is_admin:
        return
    if caller.role == "patient" and patient_address in (caller.entity_id, caller.wallet_address):
        return
    raise ForbiddenError("Access denied: only the patient can manage their consents")


@app.post("/api/consent/grant")
async def grant_consent(
    payload: ConsentGrantIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    require_patient_subject(caller, payload.patient_address)
    grant, tx_id = await svc.consent.grant(
        payload.patient_address, payload.grantee_address, payload.scope, payload.duration_days, signer
    )
    return {
        "ok": True,
        "consent": serialize_doc(grant),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": svc.consent.ledger_active,
    }


@app.post("/api/consent/revoke")
async def revoke_consent(
    payload: ConsentRevokeIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    require_patient_subject(caller, payload.patient_address)
    revoked, tx_id = await svc.consent.revoke(
        payload.patient_address, payload.grantee_address, payload.scope, signer
    )
    return {
        "ok": True,
        "revoked": revoked,
        "ledger_tx_id": tx_id,
        "ledger_mirrored": svc.consent.ledger_active,
    }


@app.get("/api/consent/check")
async def check_consent(
    patient_address: str,
    requester_address: str,
    scope: str = "medical_records",
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    allowed = await svc.consent.check(patient_address, requester_address, scope)
    return {"ok": True, "allowed": allowed, "ledger_mirrored": svc.consent.ledger_active}


@app.get("/api/consent/status")
async def consent_status(
    patient_address: str,
    requester_address: str,
    scope: str = "medical_records",
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    result = await svc.consent.status(patient_address, requester_address, scope)
    if "consent" in result:
        result["consent"] = serialize_doc(result["consent"])
    return {"ok": True, **result}


@app.get("/api/consent/list/{patient_address}")
async def list_consents(
    patient_address: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    require_patient_subject(caller, patient_address)
    grants = await svc.consent.list_all(patient_address)
    return {"ok": True, "consents": docs(grants), "ledger_mirrored": False}


# -------------------------
# Relationships
# -------------------------

@app.post("/api/relationships", status_code=201)
async def create_relationship(
    payload: RelationshipIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    svc.guard.require_role(caller, "doctor", "hospital", "admin")
    if caller.role == "doctor":
        svc.guard.require_self(caller, payload.doctor_id)
    if caller.role == "hospital":
        svc.guard.require_self(caller, payload.hospital_id)

    relationship, tx_id = await svc.relationships.create(
        payload.patient_id,
        payload.doctor_id,
        payload.hospital_id,
        payload.relationship_type,
        payload.notes,
        signer,
    )
    return {
        "ok": True,
        "relationship": serialize_doc(relationship),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": relationship["ledger_mirrored"],
    }


@app.get("/api/relationships/stats")
async def relationship_stats(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    stats = await svc.relationships.stats(caller.entity_id, caller.role) if caller.entity_id else {}
    return {"ok": True, "stats": serialize_doc(stats)}


@app.get("/api/relationships/patient/{patient_id}/doctors")
async def patient_doctors(
    patient_id: str,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    await svc.guard.authorize_patient_data(caller, patient_id)
    result = await svc.relationships.patient_doctors(patient_id, limit, offset)
    return {"ok": True, "data": docs(result["data"]), "total": result["total"]}


@app.get("/api/relationships/doctor/{doctor_id}/patients")
async def doctor_patients(
    doctor_id: str,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    svc.guard.require_role(caller, "doctor", "admin")
    svc.guard.require_self(caller, doctor_id)
    result = await svc.relationships.doctor_patients(doctor_id, limit, offset)
    return {"ok": True, "data": docs(result["data"]), "total": result["total"]}


@app.get("/api/relationships/doctor/{doctor_id}/patient/{patient_id}")
async def doctor_patient_data(
    doctor_id: str,
    patient_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    svc.guard.require_role(caller, "doctor", "admin")
    svc.guard.require_self(caller, doctor_id)
    bundle = await svc.relationships.doctor_patient_data(doctor_id, patient_id)
    return {"ok": True, "data": serialize_doc(bundle)}


@app.get("/api/relationships/patient/{patient_id}/doctor/{doctor_id}")
async def patient_doctor_data(
    patient_id: str,
    doctor_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    svc.guard.require_role(caller, "patient", "admin")
    svc.guard.require_self(caller, patient_id)
    bundle = await svc.relationships.patient_doctor_data(patient_id, doctor_id)
    return {"ok": True, "data": serialize_doc(bundle)}


@app.get("/api/relationships/{relationship_id}")
async def get_relationship(
    relationship_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    relationship = await svc.relationships.get(relationship_id)
    await svc.guard.authorize(caller, relationship)
    return {"ok": True, "relationship": serialize_doc(relationship)}


@app.post("/api/relationships/{relationship_id}/end")
async def end_relationship(
    relationship_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    await svc.guard.authorize(caller, await svc.relationships.get(relationship_id), write=True)
    relationship, tx_id = await svc.relationships.end(relationship_id, signer)
    return {
        "ok": True,
        "relationship": serialize_doc(relationship),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": relationship["ledger_mirrored"],
    }


@app.patch("/api/relationships/{relationship_id}/notes")
async def update_relationship_notes(
    relationship_id: str,
    payload: RelationshipNotesIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    await svc.guard.authorize(caller, await svc.relationships.get(relationship_id), write=True)
    relationship = await svc.relationships.update_notes(relationship_id, payload.notes)
    return {"ok": True, "relationship": serialize_doc(relationship)}


# -------------------------
# Medical records
# -------------------------

@app.post("/api/records", status_code=201)
async def create_record(
    payload: MedicalRecordIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    record, tx_id = await svc.records.create_record(payload.model_dump(exclude_none=True), caller, signer)
    return {
        "ok": True,
        "record": serialize_doc(record),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": record["ledger_mirrored"],
    }


@app.get("/api/records")
async def list_records(
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    hospital_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    result = await svc.records.list_records(caller, patient_id, doctor_id, hospital_id, page, limit)
    return {"ok": True, **result, "data": docs(result["data"])}


@app.get("/api/records/{record_id}")
async def get_record(record_id: str, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    record = await svc.records.get_record(record_id, caller)
    return {"ok": True, "record": serialize_doc(record)}


@app.patch("/api/records/{record_id}")
async def update_record(
    record_id: str,
    payload: MedicalRecordUpdateIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    record = await svc.records.update_record(record_id, payload.model_dump(exclude_none=True), caller)
    return {"ok": True, "record": serialize_doc(record)}


@app.delete("/api/records/{record_id}")
async def delete_record(record_id: str, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    await svc.records.delete_record(record_id, caller)
    return {"ok": True, "message": "Record deleted"}


@app.post("/api/records/{record_id}/reports", status_code=201)
async def attach_report(
    record_id: str,
    payload: ReportBody,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    report, tx_id = await svc.records.attach_report(record_id, payload.model_dump(exclude_none=True), caller, signer)
    return {
        "ok": True,
        "report": serialize_doc(report),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": report["ledger_mirrored"],
    }


# -------------------------
# Reports
# -------------------------

@app.post("/api/reports", status_code=201)
async def create_report(
    payload: ReportIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    report, tx_id = await svc.records.create_report(payload.model_dump(exclude_none=True), caller, signer)
    return {
        "ok": True,
        "report": serialize_doc(report),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": report["ledger_mirrored"],
    }


@app.get("/api/reports")
async def list_reports(
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    hospital_id: Optional[str] = None,
    report_type: Optional[str] = None,
    status: Optional[str] = None,
    is_critical: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "report_date",
    sort_order: str = "desc",
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    filters = {
        "patient_id": patient_id,
        "doctor_id": doctor_id,
        "hospital_id": hospital_id,
        "report_type": report_type,
        "status": status,
        "is_critical": is_critical,
        "start_date": start_date,
        "end_date": end_date,
        "page": page,
        "limit": limit,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }
    result = await svc.records.list_reports(caller, filters)
    return {"ok": True, "reports": docs(result["reports"]), "pagination": result["pagination"]}


@app.get("/api/reports/critical")
async def critical_reports(
    hospital_id: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    reports = await svc.records.critical_reports(caller, hospital_id)
    return {"ok": True, "reports": docs(reports)}


@app.get("/api/reports/stats")
async def report_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    stats = await svc.records.report_stats(caller, start_date, end_date)
    return {"ok": True, "stats": stats}


@app.get("/api/reports/search")
async def search_reports(
    q: str,
    report_type: Optional[str] = None,
    status: Optional[str] = None,
    is_critical: Optional[bool] = None,
    limit: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    filters = {"report_type": report_type, "status": status, "is_critical": is_critical, "limit": limit}
    reports = await svc.records.search_reports(q, caller, filters)
    return {"ok": True, "reports": docs(reports)}


@app.get("/api/reports/{report_id}")
async def get_report(report_id: str, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    report = await svc.records.get_report(report_id, caller)
    return {"ok": True, "report": serialize_doc(report)}


@app.patch("/api/reports/{report_id}")
async def update_report(
    report_id: str,
    payload: ReportUpdateIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    report, tx_id = await svc.records.update_report(report_id, payload.model_dump(exclude_none=True), caller, signer)
    return {
        "ok": True,
        "report": serialize_doc(report),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": report.get("ledger_mirrored", False),
    }


@app.delete("/api/reports/{report_id}")
async def delete_report(
    report_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
    signer: Optional[SigningContext] = Depends(get_signer),
):
    tx_id = await svc.records.delete_report(report_id, caller, signer)
    return {"ok": True, "message": "Report deleted", "ledger_tx_id": tx_id}


@app.post("/api/reports/{report_id}/review")
async def review_report(
    report_id: str,
    payload: ReviewIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    report = await svc.records.mark_reviewed(report_id, caller, payload.review_notes)
    return {"ok": True, "report": serialize_doc(report)}


@app.post("/api/reports/{report_id}/critical")
async def mark_report_critical(
    report_id: str,
    payload: CriticalIn,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    report = await svc.records.mark_critical(report_id, caller, payload.critical_values)
    return {"ok": True, "report": serialize_doc(report)}


# -------------------------
# Incentives
# -------------------------

@app.post("/api/incentives/payout")
async def payout(payload: PayoutIn, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    svc.guard.require_role(caller, "hospital", "admin")
    incentive, tx_id = await svc.incentives.payout(payload.patient_address, payload.rule_id, payload.amount)
    return {
        "ok": True,
        "incentive": serialize_doc(incentive),
        "ledger_tx_id": tx_id,
        "ledger_mirrored": svc.incentives.ledger_active,
    }


@app.post("/api/incentives/simulate")
async def simulate_payout(payload: PayoutIn, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    simulation = svc.incentives.simulate(payload.patient_address, payload.rule_id, payload.amount)
    return {"ok": True, "simulation": simulation}


@app.get("/api/incentives/history/{patient_address}")
async def payout_history(
    patient_address: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    payouts = await svc.incentives.history(patient_address)
    return {"ok": True, "payouts": docs(payouts)}


@app.get("/api/incentives/all")
async def all_payouts(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    svc.guard.require_role(caller, "hospital", "admin")
    return {"ok": True, "payouts": docs(await svc.incentives.all_payouts())}


@app.get("/api/incentives/status")
async def payout_status(
    patient_address: str,
    rule_id: str,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    result = await svc.incentives.status(patient_address, rule_id)
    if "incentive" in result:
        result["incentive"] = serialize_doc(result["incentive"])
    return {"ok": True, **result}


# -------------------------
# Audit chain
# -------------------------

@app.get("/api/audit/verify")
async def verify_audit_chain(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    require_admin(caller)
    broken_at = await svc.audit.verify()
    return {"ok": True, "intact": broken_at is None, "broken_at": broken_at}


@app.get("/api/audit/pending")
async def pending_reconciliation(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    require_admin(caller)
    return {"ok": True, "entries": docs(await svc.audit.pending())}
