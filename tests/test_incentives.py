import pytest

from healthchain.blockchain_client import SigningContext, text_id
from healthchain.config import ModeConfig
from healthchain.errors import MissingSignerError, ValidationError
from healthchain.incentives import IncentiveLedger
from healthchain.integrity import AuditChain
from healthchain.storage import InMemoryKeyValueStore

from .conftest import PATIENT_WALLET, TEST_ADDRESS, TEST_PRIVATE_KEY


def make_incentives(ledger, clock, mode="disabled", server_signer=None, store=None, audit=None):
    return IncentiveLedger(
        ModeConfig.from_value(mode),
        ledger,
        store or InMemoryKeyValueStore(),
        server_signer=server_signer,
        audit=audit,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_payout_off_chain(ledger, clock):
    incentives = make_incentives(ledger, clock)

    payout, tx_id = await incentives.payout(PATIENT_WALLET, "adherence-7d", 10)

    assert tx_id is None
    assert payout["amount"] == 10
    assert payout["paid_at"] == clock.now
    assert payout["ledger_mirrored"] is False
    assert ledger.submissions == []


@pytest.mark.asyncio
async def test_amount_defaults_to_zero(ledger, clock):
    incentives = make_incentives(ledger, clock)

    payout, _ = await incentives.payout(PATIENT_WALLET, "adherence-7d")

    assert payout["amount"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [-1, "10", True])
async def test_payout_rejects_bad_amount(ledger, clock, amount):
    incentives = make_incentives(ledger, clock)
    with pytest.raises(ValidationError):
        await incentives.payout(PATIENT_WALLET, "adherence-7d", amount)


@pytest.mark.asyncio
async def test_payout_requires_address_and_rule(ledger, clock):
    incentives = make_incentives(ledger, clock)
    with pytest.raises(ValidationError):
        await incentives.payout("", "adherence-7d")
    with pytest.raises(ValidationError):
        await incentives.payout(PATIENT_WALLET, "  ")


@pytest.mark.asyncio
async def test_same_millisecond_payouts_are_both_kept(ledger, clock):
    store = InMemoryKeyValueStore()
    incentives = make_incentives(ledger, clock, store=store)

    await incentives.payout(PATIENT_WALLET, "adherence-7d", 1)
    await incentives.payout(PATIENT_WALLET, "adherence-7d", 2)

    history = await incentives.history(PATIENT_WALLET)
    assert sorted(p["amount"] for p in history) == [1, 2]
    assert len(await store.items()) == 2


@pytest.mark.asyncio
async def test_status_uses_exact_prefix(ledger, clock):
    incentives = make_incentives(ledger, clock)
    await incentives.payout(PATIENT_WALLET, "rule-10", 5)

    assert (await incentives.status(PATIENT_WALLET, "rule-1"))["paid"] is False

    status = await incentives.status(PATIENT_WALLET, "rule-10")
    assert status["paid"] is True
    assert status["incentive"]["amount"] == 5


@pytest.mark.asyncio
async def test_history_is_per_patient(ledger, clock):
    incentives = make_incentives(ledger, clock)
    await incentives.payout(PATIENT_WALLET, "r1", 1)
    await incentives.payout(TEST_ADDRESS, "r1", 2)

    assert [p["amount"] for p in await incentives.history(PATIENT_WALLET)] == [1]
    assert len(await incentives.all_payouts()) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["enabled", "hybrid"])
async def test_ledger_payout_requires_server_signer(ledger, clock, mode):
    store = InMemoryKeyValueStore()
    incentives = make_incentives(ledger, clock, mode=mode, store=store)

    with pytest.raises(MissingSignerError):
        await incentives.payout(PATIENT_WALLET, "adherence-7d", 10)

    assert await store.items() == []


@pytest.mark.asyncio
async def test_ledger_payout_uses_server_signer(ledger, clock):
    server = SigningContext(TEST_PRIVATE_KEY)
    incentives = make_incentives(ledger, clock, mode="hybrid", server_signer=server)

    payout, tx_id = await incentives.payout(PATIENT_WALLET.lower(), "adherence-7d", 10)

    assert tx_id == "0xtx1"
    assert payout["ledger_tx_id"] == "0xtx1"
    operation, args, used_signer = ledger.submissions[0]
    assert operation == "payout"
    assert args == [PATIENT_WALLET, text_id("adherence-7d")]
    assert used_signer is server


@pytest.mark.asyncio
async def test_store_failure_after_ledger_marks_reconciliation(db, ledger, clock):
    class BrokenStore(InMemoryKeyValueStore):
        async def set(self, key, value):
            raise RuntimeError("store unavailable")

    audit = AuditChain(db, clock=clock)
    incentives = make_incentives(
        ledger, clock, mode="enabled", server_signer=SigningContext(TEST_PRIVATE_KEY), store=BrokenStore(), audit=audit
    )

    with pytest.raises(RuntimeError):
        await incentives.payout(PATIENT_WALLET, "adherence-7d", 10)

    pending = await audit.pending()
    assert [p["ledger_tx_id"] for p in pending] == ["0xtx1"]


def test_simulate_reports_missing_signer(ledger, clock):
    off_chain = make_incentives(ledger, clock)
    on_chain = make_incentives(ledger, clock, mode="enabled")

    assert off_chain.simulate(PATIENT_WALLET, "r1", 3)["would_succeed"] is True
    result = on_chain.simulate(PATIENT_WALLET, "r1", 3)
    assert result["would_succeed"] is False
    assert result["ledger_mirrored"] is True
    with pytest.raises(ValidationError):
        on_chain.simulate(PATIENT_WALLET, "r1", -3)


def test_container_wires_server_signer(make_services, test_settings):
    settings = test_settings.model_copy(update={"hospital_private_key": TEST_PRIVATE_KEY})

    services = make_services("enabled", settings=settings)

    assert services.incentives.server_signer is not None
    assert services.incentives.server_signer.address == TEST_ADDRESS
    assert make_services("enabled").incentives.server_signer is None
