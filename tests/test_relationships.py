import asyncio

import pytest
from bson import ObjectId

from healthchain.blockchain_client import StubLedgerGateway
from healthchain.config import ModeConfig
from healthchain.errors import (
    AlreadyInactiveError,
    DuplicateRelationshipError,
    EntityNotFoundError,
    MissingSignerError,
    NotFoundError,
    ValidationError,
)
from healthchain.identity import IdentityRegistrar
from healthchain.integrity import AuditChain
from healthchain.relationships import RelationshipLifecycle


def make_lifecycle(db, ledger, clock, mode="disabled"):
    mode = ModeConfig.from_value(mode)
    audit = AuditChain(db, clock=clock)
    identities = IdentityRegistrar(db, mode, ledger, audit=audit, clock=clock)
    return RelationshipLifecycle(db, mode, StubLedgerGateway(), identities, audit=audit, clock=clock)


async def _parties(entities):
    hospital = await entities.hospital()
    doctor = await entities.doctor(hospital, specialization="GP")
    patient = await entities.patient()
    return patient, doctor, hospital


@pytest.mark.asyncio
async def test_create_relationship(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)

    rel, tx_id = await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"], notes="first visit")

    assert tx_id is None
    assert rel["is_active"] is True
    assert rel["relationship_type"] == "primary_care"
    assert rel["start_date"] == clock.now
    assert rel["end_date"] is None
    assert rel["notes"] == "first visit"
    assert len(rel["content_hash"]) == 66


@pytest.mark.asyncio
async def test_duplicate_active_relationship(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)
    await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])

    with pytest.raises(DuplicateRelationshipError):
        await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"], "specialist")


@pytest.mark.asyncio
async def test_concurrent_creates_yield_one_relationship(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)

    results = await asyncio.gather(
        lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"]),
        lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"]),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], DuplicateRelationshipError)
    assert await db.relationships.count_documents({"is_active": True}) == 1


@pytest.mark.asyncio
async def test_create_with_missing_entity(db, ledger, clock, entities):
    patient, _, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)

    with pytest.raises(EntityNotFoundError):
        await lifecycle.create(patient["_id"], ObjectId(), hospital["_id"])


@pytest.mark.asyncio
async def test_create_with_invalid_type(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)

    with pytest.raises(ValidationError):
        await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"], "friend")


@pytest.mark.asyncio
async def test_end_is_terminal(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)
    rel, _ = await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])

    clock.advance(days=2)
    ended, _ = await lifecycle.end(rel["_id"])

    assert ended["is_active"] is False
    assert ended["end_date"] == clock.now
    with pytest.raises(AlreadyInactiveError):
        await lifecycle.end(rel["_id"])

    # a fresh relationship can be started after the old one ended
    again, _ = await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])
    assert again["_id"] != rel["_id"]


@pytest.mark.asyncio
async def test_end_unknown_relationship(db, ledger, clock):
    lifecycle = make_lifecycle(db, ledger, clock)
    with pytest.raises(NotFoundError):
        await lifecycle.end(ObjectId())


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["enabled", "hybrid"])
async def test_ledger_active_requires_signer(db, ledger, clock, entities, mode):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock, mode=mode)

    with pytest.raises(MissingSignerError):
        await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])

    assert await db.relationships.count_documents({}) == 0


@pytest.mark.asyncio
async def test_ledger_active_uses_stub_ids(db, ledger, clock, entities, signer):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock, mode="hybrid")

    rel, tx_id = await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"], signer=signer)
    assert tx_id.startswith("stub_createRelationship_")
    assert rel["ledger_mirrored"] is True

    ended, end_tx = await lifecycle.end(rel["_id"], signer)
    assert end_tx.startswith("stub_endRelationship_")
    assert ended["ledger_tx_id"] == end_tx


@pytest.mark.asyncio
async def test_update_notes(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)
    rel, _ = await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])

    await lifecycle.update_notes(rel["_id"], "follow up in a month")

    assert (await lifecycle.get(rel["_id"]))["notes"] == "follow up in a month"


@pytest.mark.asyncio
async def test_projections_only_show_active(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)
    rel, _ = await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])

    doctors = await lifecycle.patient_doctors(patient["_id"])
    patients = await lifecycle.doctor_patients(doctor["_id"])
    assert doctors["total"] == 1
    assert doctors["data"][0]["doctor"]["full_name"] == doctor["full_name"]
    assert patients["data"][0]["patient"]["full_name"] == patient["full_name"]

    await lifecycle.end(rel["_id"])
    assert (await lifecycle.patient_doctors(patient["_id"]))["total"] == 0
    assert (await lifecycle.doctor_patients(doctor["_id"]))["data"] == []


@pytest.mark.asyncio
async def test_pair_bundle_requires_active_relationship(db, ledger, clock, entities):
    patient, doctor, _ = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)

    with pytest.raises(NotFoundError):
        await lifecycle.doctor_patient_data(doctor["_id"], patient["_id"])


@pytest.mark.asyncio
async def test_pair_bundle_collects_records_and_reports(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)
    await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])

    record = {"patient_id": patient["_id"], "doctor_id": doctor["_id"], "diagnosis": "flu", "created_at": clock.now}
    await db.medical_records.insert_one(record)
    await db.reports.insert_one(
        {"medical_record_id": record["_id"], "report_type": "blood_test", "title": "CBC", "created_at": clock.now}
    )
    clock.advance(hours=1)

    bundle = await lifecycle.doctor_patient_data(doctor["_id"], patient["_id"])

    assert bundle["patient"]["full_name"] == patient["full_name"]
    assert bundle["summary"]["total_records"] == 1
    assert bundle["summary"]["total_reports"] == 1
    assert bundle["summary"]["relationship_duration_seconds"] == 3600
    assert bundle["reports"][0]["record_diagnosis"] == "flu"

    other_side = await lifecycle.patient_doctor_data(patient["_id"], doctor["_id"])
    assert other_side["doctor"]["full_name"] == doctor["full_name"]


@pytest.mark.asyncio
async def test_stats(db, ledger, clock, entities):
    patient, doctor, hospital = await _parties(entities)
    lifecycle = make_lifecycle(db, ledger, clock)
    await lifecycle.create(patient["_id"], doctor["_id"], hospital["_id"])

    patient_stats = await lifecycle.stats(patient["_id"], "patient")
    doctor_stats = await lifecycle.stats(doctor["_id"], "doctor")

    assert patient_stats["total_doctors"] == 1
    assert patient_stats["doctors"][0]["specialization"] == "GP"
    assert doctor_stats["total_patients"] == 1
    assert await lifecycle.stats(hospital["_id"], "hospital") == {}
