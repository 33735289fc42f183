# healthchain/container.py
from dataclasses import dataclass
from typing import Optional

from healthchain.access import AccessGuard
from healthchain.auth import AuthService
from healthchain.blockchain_client import (
    LedgerGateway,
    SigningContext,
    StubLedgerGateway,
    Web3LedgerGateway,
)
from healthchain.config import ModeConfig, Settings
from healthchain.consent import ConsentEngine
from healthchain.identity import IdentityRegistrar
from healthchain.incentives import IncentiveLedger
from healthchain.integrity import AuditChain, utcnow
from healthchain.records import RecordService
from healthchain.relationships import RelationshipLifecycle
from healthchain.storage import InMemoryKeyValueStore, KeyValueStore, MongoKeyValueStore


@dataclass
class Services:
    mode: ModeConfig
    ledger: LedgerGateway
    audit: AuditChain
    consent: ConsentEngine
    identities: IdentityRegistrar
    relationships: RelationshipLifecycle
    guard: AccessGuard
    records: RecordService
    incentives: IncentiveLedger
    auth: AuthService


def _default_store(db, settings: Settings, collection: str) -> KeyValueStore:
    if settings.fallback_store == "memory":
        return InMemoryKeyValueStore()
    return MongoKeyValueStore(db[collection])


def build_services(
    db,
    settings: Settings,
    mode: ModeConfig,
    ledger: Optional[LedgerGateway] = None,
    stub_ledger: Optional[LedgerGateway] = None,
    consent_store: Optional[KeyValueStore] = None,
    incentive_store: Optional[KeyValueStore] = None,
    clock=None,
) -> Services:
    """Wire every service against one database and one mode."""
    clock = clock or utcnow
    ledger = ledger or Web3LedgerGateway.from_settings(settings)
    stub_ledger = stub_ledger or StubLedgerGateway()

    audit = AuditChain(db, clock=clock)
    consent = ConsentEngine(
        mode,
        ledger,
        consent_store or _default_store(db, settings, "consent_grants"),
        audit=audit,
        clock=clock,
    )
    identities = IdentityRegistrar(db, mode, ledger, audit=audit, clock=clock)
    guard = AccessGuard(consent, db=db)

    return Services(
        mode=mode,
        ledger=ledger,
        audit=audit,
        consent=consent,
        identities=identities,
        relationships=RelationshipLifecycle(db, mode, stub_ledger, identities, audit=audit, clock=clock),
        guard=guard,
        records=RecordService(db, mode, ledger, identities, guard, audit=audit, clock=clock),
        incentives=IncentiveLedger(
            mode,
            ledger,
            incentive_store or _default_store(db, settings, "incentive_payouts"),
            server_signer=SigningContext.server(settings),
            audit=audit,
            clock=clock,
        ),
        auth=AuthService(
            db,
            identities,
            jwt_secret=settings.jwt_secret,
            jwt_expires_minutes=settings.jwt_expires_minutes,
            bcrypt_rounds=settings.bcrypt_rounds,
            clock=clock,
        ),
    )
