"""
Unit Tests for the Ledger Service

Tests cover:
1. Earn, redeem and adjust flows
2. Tier recomputation and tier notifications
3. Balance invariant (balance equals the sum of transactions)
4. Transaction history and pagination
5. Account summary and reconciliation

Each test runs against the in-memory store and the SQL store.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from loyalty.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidPaginationError,
    TransactionNotFoundError,
)
from loyalty.models import Tier, TransactionType
from loyalty.service import LedgerService
from loyalty.store import InMemoryLedgerStore
from loyalty.tiers import TierPolicy


CUSTOMER = "cust-1001"


def assert_balance_invariant(service: LedgerService, customer_id: str = CUSTOMER):
    reconciliation = service.reconcile_account(customer_id)
    assert reconciliation.consistent, reconciliation


class TestAccounts:
    """Tests for account provisioning and lookup."""

    def test_get_or_create_provisions_bronze_account(self, service):
        account = service.get_or_create_account(CUSTOMER)

        assert account.customer_id == CUSTOMER
        assert account.points_balance == 0
        assert account.points_earned == 0
        assert account.points_redeemed == 0
        assert account.tier == Tier.BRONZE

    def test_get_or_create_returns_existing(self, service):
        first = service.get_or_create_account(CUSTOMER)
        second = service.get_or_create_account(CUSTOMER)
        assert first.id == second.id

    def test_open_account_twice_fails(self, service):
        service.open_account(CUSTOMER)
        with pytest.raises(AccountAlreadyExistsError):
            service.open_account(CUSTOMER)

    def test_get_account_missing(self, service):
        with pytest.raises(AccountNotFoundError):
            service.get_account("nobody")

    def test_new_account_starts_at_lowest_configured_tier(self, store, clock):
        service = LedgerService(store, tier_policy=TierPolicy({"SILVER": 0, "GOLD": 100}), clock=clock)

        assert service.get_or_create_account(CUSTOMER).tier == Tier.SILVER
        assert service.open_account("cust-2").tier == Tier.SILVER
        assert service.get_account(CUSTOMER).tier == Tier.SILVER

    def test_raised_thresholds_never_demote(self, store, clock):
        service = LedgerService(store, clock=clock)
        service.earn_points(CUSTOMER, 600, "order-1")

        stricter = LedgerService(store, tier_policy=TierPolicy({Tier.BRONZE: 0, Tier.SILVER: 1000}), clock=clock)
        earned = stricter.earn_points(CUSTOMER, 10, "order-2")
        adjusted = stricter.adjust_points(CUSTOMER, 10, "goodwill")

        assert earned.account.tier == Tier.SILVER
        assert earned.tier_changed is False
        assert adjusted.account.tier == Tier.SILVER

    def test_get_account_is_repeatable(self, service):
        service.earn_points(CUSTOMER, 120, "order-1")
        assert service.get_account(CUSTOMER) == service.get_account(CUSTOMER)


class TestEarnPoints:
    """Tests for the earn flow."""

    def test_first_earn_creates_account(self, service):
        """Scenario: 500 points on a new customer reaches SILVER (thresholds are inclusive)."""
        result = service.earn_points(CUSTOMER, 500, "order-1")

        assert result.account.points_balance == 500
        assert result.account.points_earned == 500
        assert result.account.tier == Tier.SILVER
        assert result.previous_tier == Tier.BRONZE
        assert result.tier_upgraded

        assert result.transaction.type == TransactionType.EARN
        assert result.transaction.points == 500
        assert result.transaction.account_id == result.account.id
        assert_balance_invariant(service)

    def test_earn_within_same_band_keeps_tier(self, service):
        service.earn_points(CUSTOMER, 900, "order-1")
        result = service.earn_points(CUSTOMER, 200, "order-2")

        assert result.account.points_earned == 1100
        assert result.account.tier == Tier.SILVER
        assert not result.tier_changed

    def test_earn_keeps_reference_and_expiry(self, service, clock):
        expires_at = clock.current + timedelta(days=365)
        result = service.earn_points(CUSTOMER, 50, "order-7", reference="order-7", expires_at=expires_at)

        stored = service.get_transaction(result.transaction.id)
        assert stored.reference == "order-7"
        assert stored.expires_at == expires_at
        assert stored.expired_at is None

    @pytest.mark.parametrize("points", [0, -5])
    def test_non_positive_earn_rejected(self, service, points):
        with pytest.raises(InvalidAmountError):
            service.earn_points(CUSTOMER, points, "bad")
        with pytest.raises(AccountNotFoundError):
            service.get_account(CUSTOMER)

    def test_default_expiry_applied(self, store, clock):
        service = LedgerService(store, clock=clock, default_expiry_days=365)
        result = service.earn_points(CUSTOMER, 10, "order-1")
        assert result.transaction.expires_at == result.transaction.created_at + timedelta(days=365)

    def test_tier_climbs_through_every_band(self, service):
        tiers = []
        for _ in range(11):
            tiers.append(service.earn_points(CUSTOMER, 500, "order").account.tier)

        assert tiers[0] == Tier.SILVER
        assert tiers[2] == Tier.GOLD
        assert tiers[9] == Tier.PLATINUM
        order = list(Tier)
        assert [order.index(t) for t in tiers] == sorted(order.index(t) for t in tiers)


class TestRedeemPoints:
    """Tests for the redeem flow."""

    def test_redeem_reduces_balance_only(self, service):
        service.earn_points(CUSTOMER, 1050, "order-1")
        result = service.redeem_points(CUSTOMER, 200, "discount")

        assert result.account.points_balance == 850
        assert result.account.points_redeemed == 200
        assert result.account.points_earned == 1050
        assert result.account.tier == Tier.SILVER
        assert result.transaction.type == TransactionType.REDEEM
        assert result.transaction.points == -200
        assert_balance_invariant(service)

    def test_redeem_more_than_balance_fails(self, service):
        service.earn_points(CUSTOMER, 1050, "order-1")
        service.redeem_points(CUSTOMER, 200, "discount")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.redeem_points(CUSTOMER, 99999, "too-much")

        assert exc_info.value.balance == 850
        assert exc_info.value.required == 99999
        account = service.get_account(CUSTOMER)
        assert account.points_balance == 850
        assert service.list_transactions(CUSTOMER).total == 2

    def test_redeem_entire_balance(self, service):
        service.earn_points(CUSTOMER, 300, "order-1")
        result = service.redeem_points(CUSTOMER, 300, "voucher")
        assert result.account.points_balance == 0

    def test_redeem_never_demotes(self, service):
        service.earn_points(CUSTOMER, 1600, "order-1")
        result = service.redeem_points(CUSTOMER, 1600, "big voucher")

        assert result.account.tier == Tier.GOLD
        assert result.account.points_earned == 1600
        assert not result.tier_changed

    def test_redeem_without_account_fails(self, service):
        with pytest.raises(AccountNotFoundError):
            service.redeem_points(CUSTOMER, 10, "discount")

    @pytest.mark.parametrize("points", [0, -1])
    def test_non_positive_redeem_rejected(self, service, points):
        service.earn_points(CUSTOMER, 100, "order-1")
        with pytest.raises(InvalidAmountError):
            service.redeem_points(CUSTOMER, points, "bad")


class TestAdjustPoints:
    """Tests for administrative adjustments."""

    def test_negative_adjustment_keeps_lifetime_earned(self, service):
        service.earn_points(CUSTOMER, 1000, "order-1")
        result = service.adjust_points(CUSTOMER, -50, "correction")

        assert result.account.points_balance == 950
        assert result.account.points_earned == 1000
        assert result.account.tier == Tier.SILVER
        assert result.transaction.type == TransactionType.ADJUST
        assert result.transaction.points == -50
        assert_balance_invariant(service)

    def test_positive_adjustment_counts_toward_tier(self, service):
        service.earn_points(CUSTOMER, 1400, "order-1")
        result = service.adjust_points(CUSTOMER, 100, "goodwill")

        assert result.account.points_earned == 1500
        assert result.account.tier == Tier.GOLD
        assert result.tier_upgraded

    def test_adjustment_may_go_negative(self, service):
        service.earn_points(CUSTOMER, 100, "order-1")
        result = service.adjust_points(CUSTOMER, -250, "duplicate points removed")

        assert result.account.points_balance == -150
        assert_balance_invariant(service)

    def test_adjustment_creates_account(self, service):
        result = service.adjust_points("new-customer", 40, "welcome gift")
        assert result.account.customer_id == "new-customer"
        assert result.account.points_balance == 40

    def test_zero_adjustment_rejected(self, service):
        with pytest.raises(InvalidAmountError):
            service.adjust_points(CUSTOMER, 0, "noop")


class TestExpirePoints:
    """Tests for the expiry primitive."""

    def test_expire_reduces_balance(self, service):
        account = service.earn_points(CUSTOMER, 400, "order-1").account
        result = service.expire_points(account.id, 150, "150 points expired")

        assert result.account.points_balance == 250
        assert result.account.points_earned == 400
        assert result.transaction.type == TransactionType.EXPIRE
        assert result.transaction.points == -150
        assert_balance_invariant(service)

    def test_expire_beyond_balance_rejected(self, service):
        account = service.earn_points(CUSTOMER, 100, "order-1").account
        with pytest.raises(InsufficientBalanceError):
            service.expire_points(account.id, 101, "too much")
        assert service.get_account(CUSTOMER).points_balance == 100

    def test_expire_unknown_account(self, service):
        with pytest.raises(AccountNotFoundError):
            service.expire_points(uuid4(), 10, "missing")

    def test_expire_requires_positive_points(self, service):
        account = service.earn_points(CUSTOMER, 100, "order-1").account
        with pytest.raises(InvalidAmountError):
            service.expire_points(account.id, 0, "nothing")


class TestBalanceInvariant:
    def test_mixed_sequence_stays_consistent(self, service):
        service.earn_points(CUSTOMER, 700, "order-1")
        service.redeem_points(CUSTOMER, 150, "voucher")
        service.adjust_points(CUSTOMER, -30, "correction")
        service.adjust_points(CUSTOMER, 80, "goodwill")
        account = service.earn_points(CUSTOMER, 20, "review").account
        service.expire_points(account.id, 40, "40 points expired")

        reconciliation = service.reconcile_account(CUSTOMER)
        assert reconciliation.consistent
        assert reconciliation.ledger_balance == 700 - 150 - 30 + 80 + 20 - 40
        assert reconciliation.transaction_count == 6

        account = service.get_account(CUSTOMER)
        assert account.points_earned == 800
        assert account.points_redeemed == 150

    def test_reconcile_detects_drift(self, clock):
        store = InMemoryLedgerStore()
        service = LedgerService(store, clock=clock)
        account = service.earn_points(CUSTOMER, 100, "order-1").account
        store.storage.accounts[account.id] = account.model_copy(update={"points_balance": 90})

        reconciliation = service.reconcile_account(CUSTOMER)
        assert not reconciliation.consistent
        assert reconciliation.recorded_balance == 90
        assert reconciliation.ledger_balance == 100


class TestNotifications:
    def test_earn_notifies_after_commit(self, service, notifier):
        result = service.earn_points(CUSTOMER, 100, "order-1", reference="order-1")

        assert notifier.types() == ["loyalty.points_earned"]
        _, payload = notifier.events[0]
        assert payload["customer_id"] == CUSTOMER
        assert payload["transaction_id"] == str(result.transaction.id)
        assert payload["points"] == 100
        assert payload["balance"] == 100
        assert payload["tier"] == "BRONZE"
        assert payload["reference"] == "order-1"

    def test_tier_upgrade_event(self, service, notifier):
        service.earn_points(CUSTOMER, 1500, "order-1")

        assert notifier.types() == ["loyalty.points_earned", "loyalty.tier_upgraded"]
        _, payload = notifier.events[1]
        assert payload["previous_tier"] == "BRONZE"
        assert payload["tier"] == "GOLD"

    def test_redeem_and_adjust_events(self, service, notifier):
        service.earn_points(CUSTOMER, 100, "order-1")
        service.redeem_points(CUSTOMER, 10, "voucher")
        service.adjust_points(CUSTOMER, -5, "correction")

        assert notifier.types() == [
            "loyalty.points_earned",
            "loyalty.points_redeemed",
            "loyalty.points_adjusted",
        ]

    def test_rejected_operation_sends_nothing(self, service, notifier):
        service.earn_points(CUSTOMER, 100, "order-1")
        with pytest.raises(InsufficientBalanceError):
            service.redeem_points(CUSTOMER, 500, "too much")
        assert notifier.types() == ["loyalty.points_earned"]

    def test_notifier_failure_keeps_write(self, store, failing_notifier, clock):
        service = LedgerService(store, failing_notifier, clock=clock)

        result = service.earn_points(CUSTOMER, 600, "order-1")

        assert failing_notifier.calls == 2
        assert result.account.points_balance == 600
        assert service.get_account(CUSTOMER).points_balance == 600
        assert service.list_transactions(CUSTOMER).total == 1


class TestTransactionHistory:
    """Tests for listing transactions."""

    def test_newest_first_with_pages(self, service):
        for points in range(1, 26):
            service.earn_points(CUSTOMER, points, f"order-{points}")

        page = service.list_transactions(CUSTOMER, page=1, limit=10)
        assert page.total == 25
        assert page.total_pages == 3
        assert [t.points for t in page.items] == list(range(25, 15, -1))

        last = service.list_transactions(CUSTOMER, page=3, limit=10)
        assert [t.points for t in last.items] == [5, 4, 3, 2, 1]

        beyond = service.list_transactions(CUSTOMER, page=4, limit=10)
        assert beyond.items == []
        assert beyond.total == 25

    def test_pages_do_not_overlap(self, service):
        for points in range(1, 8):
            service.earn_points(CUSTOMER, points, "order")

        seen = []
        for page in range(1, 5):
            seen.extend(t.id for t in service.list_transactions(CUSTOMER, page=page, limit=2).items)
        assert len(seen) == len(set(seen)) == 7

    def test_filter_by_type(self, service):
        service.earn_points(CUSTOMER, 100, "order-1")
        service.redeem_points(CUSTOMER, 10, "voucher")
        service.redeem_points(CUSTOMER, 20, "voucher")

        page = service.list_transactions(CUSTOMER, type=TransactionType.REDEEM)
        assert page.total == 2
        assert all(t.type == TransactionType.REDEEM for t in page.items)

    def test_filter_by_date_range(self, service, clock):
        service.earn_points(CUSTOMER, 1, "old")
        clock.advance(days=10)
        window_start = clock.current
        service.earn_points(CUSTOMER, 2, "in range")
        window_end = clock.current
        clock.advance(days=10)
        service.earn_points(CUSTOMER, 3, "new")

        page = service.list_transactions(CUSTOMER, date_from=window_start, date_to=window_end)
        assert [t.points for t in page.items] == [2]

    def test_empty_history(self, service):
        service.get_or_create_account(CUSTOMER)
        page = service.list_transactions(CUSTOMER)
        assert page.total == 0
        assert page.total_pages == 0
        assert page.limit == 20

    @pytest.mark.parametrize("page, limit", [(0, 10), (1, 0), (1, 101), (-1, 10)])
    def test_invalid_pagination(self, service, page, limit):
        service.get_or_create_account(CUSTOMER)
        with pytest.raises(InvalidPaginationError):
            service.list_transactions(CUSTOMER, page=page, limit=limit)

    def test_unknown_customer(self, service):
        with pytest.raises(AccountNotFoundError):
            service.list_transactions("nobody")

    def test_get_transaction_missing(self, service):
        with pytest.raises(TransactionNotFoundError):
            service.get_transaction(uuid4())


class TestSummary:
    def test_summary_reports_expiring_points_and_next_tier(self, service, clock):
        soon = clock.current + timedelta(days=10)
        later = clock.current + timedelta(days=90)
        service.earn_points(CUSTOMER, 200, "order-1", expires_at=soon)
        service.earn_points(CUSTOMER, 300, "order-2", expires_at=later)
        service.earn_points(CUSTOMER, 100, "order-3")

        summary = service.get_summary(CUSTOMER)

        assert summary.points_balance == 600
        assert summary.expiring_points == 200
        assert summary.next_expiry_at == soon
        assert summary.tier == Tier.SILVER
        assert summary.next_tier == Tier.GOLD
        assert summary.points_to_next_tier == 900

    def test_expiring_points_capped_at_balance(self, service, clock):
        service.earn_points(CUSTOMER, 300, "order-1", expires_at=clock.current + timedelta(days=5))
        service.redeem_points(CUSTOMER, 250, "voucher")

        assert service.get_summary(CUSTOMER).expiring_points == 50

    def test_top_tier_summary(self, service):
        service.earn_points(CUSTOMER, 6000, "order-1")
        summary = service.get_summary(CUSTOMER)
        assert summary.tier == Tier.PLATINUM
        assert summary.next_tier is None
        assert summary.points_to_next_tier is None
        assert summary.expiring_points == 0
