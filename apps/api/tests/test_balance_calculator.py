from datetime import datetime, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from repaircoin_api.domain.ledger import CustomerNotFoundError
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.shop import Shop
from repaircoin_api.models.transaction import (
    LedgerTransaction,
    TransactionOrigin,
    TransactionStatus,
    TransactionType,
)
from repaircoin_api.services.balance import BalanceCalculator, available_balance_formula


ADDRESS = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"


def _wallet_mint(amount: str, status: TransactionStatus) -> LedgerTransaction:
    return LedgerTransaction(
        type=TransactionType.MINT,
        origin=TransactionOrigin.WALLET_DIRECT_MINT,
        status=status,
        amount=Decimal(amount),
        customer_address=ADDRESS,
        metadata_json={"mintType": "instant_mint"},
        timestamp=datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc),
    )


def test_formula_matches_documented_example() -> None:
    assert available_balance_formula(Decimal("100"), Decimal("30"), Decimal("10"), Decimal("0")) == Decimal("60.00")


def test_formula_never_goes_negative() -> None:
    assert available_balance_formula(Decimal("10"), Decimal("30"), Decimal("5"), Decimal("2")) == Decimal("0.00")


def test_formula_treats_missing_inputs_as_zero() -> None:
    assert available_balance_formula(Decimal("5"), None, None, None) == Decimal("5.00")
    assert available_balance_formula(None, None, None, None) == Decimal("0.00")


@pytest.mark.asyncio
async def test_lookup_counts_only_confirmed_wallet_direct_mints(session_factory) -> None:
    async with session_factory() as session:
        session.add(Shop(shop_id="shop001", name="Fix-It", active=True, verified=True))
        session.add(Customer(address=ADDRESS, lifetime_earnings=Decimal("100")))
        session.add_all(
            [
                _wallet_mint("15", TransactionStatus.CONFIRMED),
                _wallet_mint("20", TransactionStatus.PENDING),
                _wallet_mint("5", TransactionStatus.FAILED),
                LedgerTransaction(
                    type=TransactionType.MINT,
                    origin=TransactionOrigin.SHOP_REWARD,
                    status=TransactionStatus.CONFIRMED,
                    amount=Decimal("100"),
                    customer_address=ADDRESS,
                    shop_id="shop001",
                    timestamp=datetime(2026, 1, 4, 9, 0, tzinfo=timezone.utc),
                ),
            ]
        )
        await session.commit()

    async with session_factory() as session:
        breakdown = await BalanceCalculator(session).lookup(ADDRESS)

    assert breakdown is not None
    assert breakdown.minted_to_wallet == Decimal("15.00")
    assert breakdown.lifetime_earnings == Decimal("100.00")
    assert breakdown.available_balance == Decimal("85.00")


@pytest.mark.asyncio
async def test_lookup_is_case_insensitive_and_distinguishes_missing(session_factory) -> None:
    async with session_factory() as session:
        session.add(
            Customer(
                address=ADDRESS,
                lifetime_earnings=Decimal("100"),
                total_redemptions=Decimal("30"),
                pending_mint_balance=Decimal("10"),
            )
        )
        await session.commit()

    async with session_factory() as session:
        calculator = BalanceCalculator(session)
        upper = await calculator.compute(ADDRESS.upper().replace("0X", "0x"))
        lower = await calculator.compute(ADDRESS.lower())
        missing = await calculator.lookup("0x" + "9" * 40)
        with pytest.raises(CustomerNotFoundError):
            await calculator.compute("0x" + "9" * 40)

    assert upper == lower == Decimal("60.00")
    assert missing is None


@pytest.mark.asyncio
async def test_inconsistent_aggregates_clamp_to_zero(session_factory) -> None:
    async with session_factory() as session:
        session.add(
            Customer(
                address=ADDRESS,
                lifetime_earnings=Decimal("20"),
                total_redemptions=Decimal("30"),
                pending_mint_balance=Decimal("10"),
            )
        )
        await session.commit()

    async with session_factory() as session:
        breakdown = await BalanceCalculator(session).lookup(ADDRESS)

    assert breakdown.available_balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_customer_balance_matches_shop_validation(app_with_db) -> None:
    app, session_factory = app_with_db

    async with session_factory() as session:
        session.add(
            Customer(
                address=ADDRESS,
                lifetime_earnings=Decimal("100"),
                total_redemptions=Decimal("30"),
                pending_mint_balance=Decimal("10"),
            )
        )
        await session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        balance_resp = await client.get(f"/api/v1/customers/{ADDRESS}/balance")
        assert balance_resp.status_code == 200
        balance = balance_resp.json()
        assert balance["address"] == ADDRESS.lower()
        assert balance["availableBalance"] == 60.0
        assert balance["pendingMintBalance"] == 10.0

        at_limit = await client.post(
            "/api/v1/redemption-sessions/validate",
            json={"customerAddress": ADDRESS.lower(), "amount": "60.00"},
        )
        assert at_limit.status_code == 200
        assert at_limit.json()["approvable"] is True
        assert at_limit.json()["availableBalance"] == balance["availableBalance"]

        over_limit = await client.post(
            "/api/v1/redemption-sessions/validate",
            json={"customerAddress": ADDRESS, "amount": "60.01"},
        )
        assert over_limit.status_code == 200
        payload = over_limit.json()
        assert payload["approvable"] is False
        assert payload["deficit"] == pytest.approx(0.01)
        assert payload["reason"] == "insufficient balance"

        missing = await client.get("/api/v1/customers/0x0000000000000000000000000000000000000000/balance")
        assert missing.status_code == 404
