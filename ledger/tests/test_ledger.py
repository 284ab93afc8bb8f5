"""
Unit Tests for the Ledger Service

Tests cover:
1. User and wallet creation
2. Deposit flow
3. Withdrawal flow and overdraft protection
4. Amount validation
5. Transaction history ordering
"""

import pytest
from decimal import Decimal

from ledger.models import TransactionType, TransactionStatus
from ledger.service import (
    LedgerService,
    InvalidAmount,
    InsufficientBalance,
    IdentifierCollision,
    MAX_AMOUNT,
    exact_sum,
    parse_amount,
)


USER_ID = "U1"
OTHER_ID = "U2"


class TestUserCreation:
    """Tests for lazy user and wallet creation."""

    def test_creates_user_with_zero_wallet(self, service):
        """Test that a new user gets a zero-balance wallet."""
        user = service.get_or_create_user(USER_ID)

        assert user.id == USER_ID
        assert user.created_at is not None
        wallet = service.get_wallet(USER_ID)
        assert wallet.balance == Decimal("0")
        assert wallet.pending == Decimal("0")

    def test_get_or_create_is_idempotent(self, service):
        """Test that a second call returns the same user."""
        first = service.get_or_create_user(USER_ID)
        second = service.get_or_create_user(USER_ID)

        assert first == second
        assert len(service.store.users) == 1
        assert len(service.store.wallets) == 1

    def test_get_wallet_without_user(self, service):
        """Test that a wallet is created for an unknown user."""
        wallet = service.get_wallet("ghost")

        assert wallet.user_id == "ghost"
        assert wallet.balance == Decimal("0")

    def test_get_wallet_returns_copy(self, service):
        """Test that callers cannot mutate the stored wallet."""
        service.get_or_create_user(USER_ID)
        wallet = service.get_wallet(USER_ID)
        wallet.balance = Decimal("999")

        assert service.get_wallet(USER_ID).balance == Decimal("0")


class TestDepositFlow:
    """Tests for the deposit flow."""

    def test_deposit_increases_balance(self, service):
        """Test that a deposit adds exactly the amount and records one transaction."""
        service.get_or_create_user(USER_ID)

        tx = service.deposit(USER_ID, Decimal("100.50"))

        assert service.get_wallet(USER_ID).balance == Decimal("100.50")
        assert tx.type == TransactionType.DEPOSIT
        assert tx.status == TransactionStatus.CONFIRMED
        assert tx.amount == Decimal("100.50")
        assert tx.txid.startswith("TX-")
        assert len(service.list_transactions(USER_ID)) == 1

    @pytest.mark.parametrize("amount", [1, "2.5", 0.1, Decimal("7")])
    def test_deposit_accepts_numeric_inputs(self, service, amount):
        """Test that ints, floats, strings and decimals are accepted."""
        service.get_or_create_user(USER_ID)

        tx = service.deposit(USER_ID, amount)

        assert tx.amount == Decimal(str(amount))
        assert service.get_wallet(USER_ID).balance == Decimal(str(amount))

    def test_deposits_accumulate(self, service):
        """Test that multiple deposits accumulate."""
        service.deposit(USER_ID, 100)
        service.deposit(USER_ID, 200)

        assert service.get_wallet(USER_ID).balance == Decimal("300")
        assert len(service.list_transactions(USER_ID)) == 2

    def test_transaction_identifiers_are_unique(self, service):
        """Test that every transaction gets distinct id and txid values."""
        txs = [service.deposit(USER_ID, 1) for _ in range(20)]

        assert len({tx.id for tx in txs}) == 20
        assert len({tx.txid for tx in txs}) == 20

    def test_identifier_collision_is_fatal(self, service, monkeypatch):
        """Test that a clashing generated id raises instead of recording."""
        tx = service.deposit(USER_ID, 1)
        monkeypatch.setattr("ledger.service.uuid4", lambda: type("U", (), {"hex": tx.id})())

        with pytest.raises(IdentifierCollision):
            service.deposit(USER_ID, 1)


class TestWithdrawFlow:
    """Tests for the withdrawal flow."""

    def test_deposit_then_withdraw(self, service):
        """Test the U1 scenario: deposit 100, withdraw 30."""
        service.get_or_create_user(USER_ID)
        service.deposit(USER_ID, 100)
        service.withdraw(USER_ID, 30)

        assert service.get_wallet(USER_ID).balance == Decimal("70")
        history = service.list_transactions(USER_ID)
        assert len(history) == 2
        assert history[0].type == TransactionType.WITHDRAW
        assert history[0].amount == Decimal("30")

    def test_round_trip_restores_balance(self, service):
        """Test that deposit then withdraw of the same amount is a no-op on balance."""
        service.deposit(USER_ID, "12.34")
        before = service.get_wallet(USER_ID).balance

        service.deposit(USER_ID, "56.78")
        service.withdraw(USER_ID, "56.78")

        assert service.get_wallet(USER_ID).balance == before

    def test_overdraft_rejected(self, service):
        """Test that withdrawing more than the balance changes nothing."""
        service.deposit(USER_ID, 50)

        with pytest.raises(InsufficientBalance):
            service.withdraw(USER_ID, "50.01")

        assert service.get_wallet(USER_ID).balance == Decimal("50")
        assert len(service.list_transactions(USER_ID)) == 1

    def test_withdraw_full_balance(self, service):
        """Test that the whole balance can be withdrawn."""
        service.deposit(USER_ID, 50)
        service.withdraw(USER_ID, 50)

        assert service.get_wallet(USER_ID).balance == Decimal("0")

    def test_withdraw_from_empty_wallet(self, service):
        """Test that a fresh user cannot withdraw."""
        service.get_or_create_user(USER_ID)

        with pytest.raises(InsufficientBalance):
            service.withdraw(USER_ID, 1)
        assert service.list_transactions(USER_ID) == []


class TestAmountValidation:
    """Tests for amount validation."""

    @pytest.mark.parametrize(
        "amount",
        [0, -5, "0", "-1", None, "abc", "", float("nan"), float("inf"), "Infinity", "NaN", True, [1]],
    )
    def test_invalid_amounts_rejected(self, service, amount):
        """Test that non-finite, zero, negative and garbage amounts are rejected."""
        with pytest.raises(InvalidAmount):
            service.deposit(USER_ID, amount)
        with pytest.raises(InvalidAmount):
            service.withdraw(USER_ID, amount)

        assert service.list_transactions(USER_ID) == []

    def test_parse_amount_keeps_float_digits(self):
        """Test that floats convert through their shortest repr."""
        assert parse_amount(0.1) == Decimal("0.1")


class TestAmountBounds:
    """Tests that balances always move by exactly the recorded amount."""

    def test_huge_deposit_rejected(self, service):
        """Test that an amount too large to add exactly is refused up front."""
        service.deposit(USER_ID, 1)

        with pytest.raises(InvalidAmount):
            service.deposit(USER_ID, "1e28")

        assert service.get_wallet(USER_ID).balance == Decimal("1")
        assert len(service.list_transactions(USER_ID)) == 1

    def test_tiny_fraction_rejected(self, service):
        """Test that amounts finer than the supported scale are refused."""
        service.deposit(USER_ID, 1)

        with pytest.raises(InvalidAmount):
            service.deposit(USER_ID, "0.000000001")

        assert service.get_wallet(USER_ID).balance == Decimal("1")
        assert len(service.list_transactions(USER_ID)) == 1

    @pytest.mark.parametrize("amount", [MAX_AMOUNT, "0.00000001", "1.500000000"])
    def test_boundary_amounts_accepted(self, service, amount):
        before = service.get_wallet(USER_ID).balance

        tx = service.deposit(USER_ID, amount)

        assert service.get_wallet(USER_ID).balance - before == tx.amount

    def test_every_deposit_moves_balance_exactly(self, service):
        """Test that a large balance still grows by each small deposit."""
        service.deposit(USER_ID, MAX_AMOUNT)
        service.deposit(USER_ID, "0.00000001")

        assert service.get_wallet(USER_ID).balance == MAX_AMOUNT + Decimal("0.00000001")

    def test_inexact_balance_rejected_before_mutation(self, service):
        """Test that a balance too wide to absorb a deposit stays untouched."""
        service.get_or_create_user(USER_ID)
        service.store.wallets[USER_ID].balance = Decimal("1e40")

        with pytest.raises(InvalidAmount):
            service.deposit(USER_ID, "0.5")

        assert service.get_wallet(USER_ID).balance == Decimal("1e40")
        assert service.list_transactions(USER_ID) == []

    def test_exact_sum(self):
        assert exact_sum(Decimal("70"), Decimal("-30")) == Decimal("40")
        with pytest.raises(InvalidAmount):
            exact_sum(Decimal("1e30"), Decimal("0.00000001"))


class TestTransactionHistory:
    """Tests for transaction history retrieval."""

    def test_limit_returns_newest_first(self, service):
        """Test that a limit of 2 returns the two most recent transactions."""
        txs = [service.deposit(USER_ID, amount) for amount in (1, 2, 3, 4, 5)]

        recent = service.list_transactions(USER_ID, 2)

        assert [tx.id for tx in recent] == [txs[4].id, txs[3].id]

    def test_history_is_per_user(self, service):
        """Test that other users' transactions are not returned."""
        service.deposit(USER_ID, 10)
        service.deposit(OTHER_ID, 20)

        history = service.list_transactions(USER_ID)
        assert len(history) == 1
        assert history[0].user_id == USER_ID

    def test_non_positive_limit(self, service):
        """Test that a zero limit returns nothing."""
        service.deposit(USER_ID, 10)

        assert service.list_transactions(USER_ID, 0) == []

    def test_memory_only_service(self):
        """Test that a service without a backing file works in memory."""
        service = LedgerService()
        service.deposit(USER_ID, 5)

        assert service.get_wallet(USER_ID).balance == Decimal("5")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
