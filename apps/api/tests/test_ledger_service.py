from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from repaircoin_api.domain.ledger import (
    CustomerNotFoundError,
    InsufficientBalanceError,
    InvalidTransactionStateError,
    ShopNotFoundError,
)
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.shop import Shop
from repaircoin_api.models.transaction import (
    LedgerTransaction,
    TransactionOrigin,
    TransactionStatus,
    TransactionType,
)
from repaircoin_api.services.balance import BalanceCalculator
from repaircoin_api.services.ledger import LedgerService


ADDRESS = "0x5555555555555555555555555555555555abcdef"


async def _seed(session_factory) -> None:
    async with session_factory() as session:
        session.add(Shop(shop_id="shop001", name="Fix-It", active=True, verified=True))
        await LedgerService(session).register_customer(ADDRESS, name="Dana")
        await session.commit()


def _at(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_origin_classifies_legacy_rows() -> None:
    assert TransactionOrigin.from_legacy("redeem", None) is TransactionOrigin.REDEMPTION
    assert TransactionOrigin.from_legacy(TransactionType.MINT, {"mintType": "instant_mint"}) is (
        TransactionOrigin.WALLET_DIRECT_MINT
    )
    assert TransactionOrigin.from_legacy("mint", {"source": "customer_dashboard"}) is (
        TransactionOrigin.WALLET_DIRECT_MINT
    )
    assert TransactionOrigin.from_legacy("mint", {"mintType": "queued_mint"}) is TransactionOrigin.SHOP_REWARD
    assert TransactionOrigin.from_legacy("mint", None) is TransactionOrigin.SHOP_REWARD


def test_ledger_rows_reject_negative_amounts() -> None:
    with pytest.raises(ValueError):
        LedgerTransaction(
            type=TransactionType.MINT,
            origin=TransactionOrigin.SHOP_REWARD,
            amount=Decimal("-1"),
            customer_address=ADDRESS,
        )


@pytest.mark.asyncio
async def test_register_customer_is_idempotent(session_factory) -> None:
    await _seed(session_factory)

    async with session_factory() as session:
        again = await LedgerService(session).register_customer(ADDRESS.upper().replace("0X", "0x"))
        await session.commit()
        count = (await session.execute(select(func.count(Customer.address)))).scalar_one()

    assert again.address == ADDRESS
    assert again.name == "Dana"
    assert count == 1


@pytest.mark.asyncio
async def test_shop_rewards_roll_daily_and_monthly_counters(session_factory) -> None:
    await _seed(session_factory)

    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("25"), occurred_at=_at(2026, 1, 31, 22, 0))
        await ledger.record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("10"), occurred_at=_at(2026, 1, 31, 23, 30))
        customer = await ledger.get_customer(ADDRESS)
        assert customer.daily_earnings == Decimal("35.00")
        assert customer.monthly_earnings == Decimal("35.00")

        await ledger.record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("5"), occurred_at=_at(2026, 2, 1, 8, 0))
        assert customer.daily_earnings == Decimal("5.00")
        assert customer.monthly_earnings == Decimal("5.00")

        await ledger.record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("7"), occurred_at=_at(2026, 2, 2, 8, 0))
        await session.commit()

    async with session_factory() as session:
        customer = await session.get(Customer, ADDRESS)
        assert customer.lifetime_earnings == Decimal("47.00")
        assert customer.daily_earnings == Decimal("7.00")
        assert customer.monthly_earnings == Decimal("12.00")
        assert customer.last_earned_date.date() == _at(2026, 2, 2).date()


@pytest.mark.asyncio
async def test_reward_requires_known_customer_and_shop(session_factory) -> None:
    await _seed(session_factory)

    async with session_factory() as session:
        ledger = LedgerService(session)
        with pytest.raises(CustomerNotFoundError):
            await ledger.record_shop_reward("0x" + "6" * 40, shop_id="shop001", amount=Decimal("5"))
        with pytest.raises(ShopNotFoundError):
            await ledger.record_shop_reward(ADDRESS, shop_id="shop404", amount=Decimal("5"))
        with pytest.raises(ValueError):
            await ledger.record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("0"))


@pytest.mark.asyncio
async def test_pending_reward_counts_only_once_confirmed(session_factory) -> None:
    await _seed(session_factory)

    async with session_factory() as session:
        ledger = LedgerService(session)
        pending = await ledger.record_shop_reward(
            ADDRESS,
            shop_id="shop001",
            amount=Decimal("20"),
            status=TransactionStatus.PENDING,
        )
        doomed = await ledger.record_shop_reward(
            ADDRESS,
            shop_id="shop001",
            amount=Decimal("15"),
            status=TransactionStatus.PENDING,
        )
        await session.commit()
        pending_id, doomed_id = pending.id, doomed.id

    async with session_factory() as session:
        assert await BalanceCalculator(session).compute(ADDRESS) == Decimal("0.00")

    async with session_factory() as session:
        ledger = LedgerService(session)
        confirmed = await ledger.confirm_transaction(pending_id)
        failed = await ledger.fail_transaction(doomed_id, reason="chain reverted")
        await session.commit()

    assert confirmed.status is TransactionStatus.CONFIRMED
    assert failed.status is TransactionStatus.FAILED
    assert failed.metadata_json["failureReason"] == "chain reverted"

    async with session_factory() as session:
        ledger = LedgerService(session)
        assert await BalanceCalculator(session).compute(ADDRESS) == Decimal("20.00")
        with pytest.raises(InvalidTransactionStateError):
            await ledger.confirm_transaction(pending_id)
        with pytest.raises(InvalidTransactionStateError):
            await ledger.fail_transaction(doomed_id)


@pytest.mark.asyncio
async def test_pending_debit_rechecks_balance_on_confirm(session_factory) -> None:
    await _seed(session_factory)

    async with session_factory() as session:
        await LedgerService(session).record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("50"))
        debit = LedgerTransaction(
            type=TransactionType.REDEEM,
            origin=TransactionOrigin.REDEMPTION,
            status=TransactionStatus.PENDING,
            amount=Decimal("80"),
            customer_address=ADDRESS,
            shop_id="shop001",
            metadata_json={},
            timestamp=_at(2026, 2, 3, 10, 0),
        )
        session.add(debit)
        await session.commit()
        debit_id = debit.id

    async with session_factory() as session:
        with pytest.raises(InsufficientBalanceError) as excinfo:
            await LedgerService(session).confirm_transaction(debit_id)

    assert excinfo.value.deficit == Decimal("30.00")


@pytest.mark.asyncio
async def test_queued_and_instant_mints_reduce_available_balance(session_factory) -> None:
    await _seed(session_factory)

    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("100"))
        queued = await ledger.queue_for_minting(ADDRESS, Decimal("40"))
        assert queued.pending_mint_balance == Decimal("40.00")
        assert await BalanceCalculator(session).compute(ADDRESS) == Decimal("60.00")

        with pytest.raises(InsufficientBalanceError):
            await ledger.queue_for_minting(ADDRESS, Decimal("70"))

        completed = await ledger.complete_mint(ADDRESS, Decimal("40"), transaction_hash="0xfeed")
        instant = await ledger.record_instant_mint(ADDRESS, Decimal("10"))
        await session.commit()

    assert completed.origin is TransactionOrigin.WALLET_DIRECT_MINT
    assert completed.metadata_json == {"mintType": "queued_mint"}
    assert instant.metadata_json == {"mintType": "instant_mint"}

    async with session_factory() as session:
        breakdown = await BalanceCalculator(session).lookup(ADDRESS)
        history = await LedgerService(session).list_transactions(ADDRESS)

    assert breakdown.pending_mint_balance == Decimal("0.00")
    assert breakdown.minted_to_wallet == Decimal("50.00")
    assert breakdown.available_balance == Decimal("50.00")
    assert breakdown.lifetime_earnings == Decimal("100.00")
    assert len(history) == 3


@pytest.mark.asyncio
async def test_complete_mint_cannot_exceed_queued_amount(session_factory) -> None:
    await _seed(session_factory)

    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.record_shop_reward(ADDRESS, shop_id="shop001", amount=Decimal("30"))
        await ledger.queue_for_minting(ADDRESS, Decimal("10"))
        with pytest.raises(InsufficientBalanceError):
            await ledger.complete_mint(ADDRESS, Decimal("11"))
