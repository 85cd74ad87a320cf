"""
Test suite for the account store

Tests account lifecycle, balance adjustment, movements and restriction
bands, including the overlap rules and concurrent debits.
"""

import pytest
import threading
from decimal import Decimal

from banking_core.accounts import (
    Account, AccountStatus, AccountStore, Restriction, ranges_overlap
)
from banking_core.audit import AuditEventType, AuditTrail
from banking_core.errors import (
    AccountLimitExceeded, AccountNotFound, BankingError, InsufficientFunds, InvalidAmount,
    InvalidRange, InvalidStateTransition, OverlappingRange, OwnerNotFound, PositiveBalance,
    RestrictionNotFound, ValidationError
)
from banking_core.messaging import EventPublisher, InMemoryEventBus, Topics
from banking_core.storage import InMemoryStorage
from banking_core.users import InMemoryUserDirectory


class SequenceRandom:
    """Deterministic stand-in for random.Random that replays fixed numbers"""

    def __init__(self, numbers):
        self.numbers = list(numbers)

    def randint(self, a, b):
        if len(self.numbers) > 1:
            return self.numbers.pop(0)
        return self.numbers[0]


class AccountStoreTestCase:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.users = InMemoryUserDirectory({"owner-1", "owner-2"})
        self.event_bus = InMemoryEventBus()
        self.store = AccountStore(
            self.storage,
            self.audit_trail,
            self.users,
            event_publisher=EventPublisher(self.event_bus)
        )


class TestAccountLifecycle(AccountStoreTestCase):

    def test_create_account(self):
        account = self.store.create_account("owner-1")

        assert account.status == AccountStatus.ACTIVE
        assert account.balance == Decimal("0.00")
        assert account.account_type == "CORRIENTE"
        assert len(account.account_number) == 10
        assert account.account_number.isdigit()
        assert account.restrictions == []
        assert self.store.find_by_number(account.account_number).id == account.id

        events = self.event_bus.get_events(Topics.ACCOUNTS_CREATED.value)
        assert len(events) == 1
        assert events[0][1].entity_id == account.id

        audit = self.audit_trail.get_events_for_entity("account", account.id)
        assert audit[0].event_type == AuditEventType.ACCOUNT_CREATED

    def test_create_savings_account(self):
        account = self.store.create_account("owner-1", "AHORROS")
        assert account.account_type == "AHORROS"

    def test_unknown_account_type_rejected(self):
        with pytest.raises(ValidationError, match="Unknown account type"):
            self.store.create_account("owner-1", "PLAZO_FIJO")

    def test_unknown_owner_rejected(self):
        with pytest.raises(OwnerNotFound):
            self.store.create_account("ghost")
        assert self.storage.count("accounts") == 0

    def test_owner_account_limit(self):
        self.store.create_account("owner-1")
        self.store.create_account("owner-1", "AHORROS")

        with pytest.raises(AccountLimitExceeded):
            self.store.create_account("owner-1")

        # Other owners are unaffected
        self.store.create_account("owner-2")

    def test_cancelled_accounts_do_not_count_toward_limit(self):
        first = self.store.create_account("owner-1")
        self.store.create_account("owner-1")
        self.store.cancel_account(first.id)

        third = self.store.create_account("owner-1")

        assert third.is_active
        assert len(self.store.list_for_owner("owner-1")) == 2
        assert len(self.store.list_for_owner("owner-1", include_cancelled=True)) == 3

    def test_concurrent_creation_respects_limit(self):
        errors = []
        created = []

        def open_account():
            try:
                created.append(self.store.create_account("owner-1"))
            except AccountLimitExceeded as e:
                errors.append(e)

        threads = [threading.Thread(target=open_account) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 2
        assert len(errors) == 4

    def test_account_number_collision_is_retried(self):
        store = AccountStore(
            self.storage, self.audit_trail, self.users,
            rng=SequenceRandom([1234567890, 1234567890, 1234567891])
        )
        first = store.create_account("owner-1")
        second = store.create_account("owner-2")

        assert first.account_number == "1234567890"
        assert second.account_number == "1234567891"

    def test_account_number_space_exhausted(self):
        store = AccountStore(
            self.storage, self.audit_trail, self.users,
            number_max_attempts=3, rng=SequenceRandom([1234567890])
        )
        store.create_account("owner-1")

        with pytest.raises(BankingError, match="unique account number"):
            store.create_account("owner-2")

    def test_lookups(self):
        account = self.store.create_account("owner-1")

        assert self.store.find_by_id(account.id).account_number == account.account_number
        assert self.store.get_account("missing") is None
        with pytest.raises(AccountNotFound):
            self.store.find_by_id("missing")
        with pytest.raises(AccountNotFound):
            self.store.find_by_number("0000000000")

    def test_update_status(self):
        account = self.store.create_account("owner-1")

        blocked = self.store.update_status(account.id, AccountStatus.BLOCKED, "fraud review")
        assert blocked.status == AccountStatus.BLOCKED
        assert not blocked.is_active

        reactivated = self.store.update_status(account.id, AccountStatus.ACTIVE)
        assert reactivated.is_active
        assert len(self.event_bus.get_events(Topics.ACCOUNTS_UPDATED.value)) == 2

    def test_status_cannot_be_set_to_cancelled(self):
        account = self.store.create_account("owner-1")
        with pytest.raises(InvalidStateTransition):
            self.store.update_status(account.id, AccountStatus.CANCELLED)

    def test_cancelled_account_cannot_be_reactivated(self):
        account = self.store.create_account("owner-1")
        self.store.cancel_account(account.id)

        with pytest.raises(InvalidStateTransition):
            self.store.update_status(account.id, AccountStatus.ACTIVE)

    def test_cancel_with_zero_balance(self):
        account = self.store.create_account("owner-1")

        cancelled = self.store.cancel_account(account.id)

        assert cancelled.status == AccountStatus.CANCELLED
        # Soft cancellation: the record is still there
        assert self.store.find_by_id(account.id).is_cancelled

    def test_cancel_with_balance_rejected(self):
        account = self.store.create_account("owner-1")
        self.store.adjust_balance(account.id, "10.00")

        with pytest.raises(PositiveBalance):
            self.store.cancel_account(account.id)
        assert self.store.find_by_id(account.id).is_active

    def test_cancel_twice_rejected(self):
        account = self.store.create_account("owner-1")
        self.store.cancel_account(account.id)

        with pytest.raises(InvalidStateTransition):
            self.store.cancel_account(account.id)


class TestBalances(AccountStoreTestCase):

    def setup_method(self):
        super().setup_method()
        self.account = self.store.create_account("owner-1")

    def test_credit_and_debit(self):
        self.store.adjust_balance(self.account.id, Decimal("100.00"))
        account = self.store.adjust_balance(self.account.id, "-40.00")

        assert account.balance == Decimal("60.00")
        assert account.last_movement_at is not None

    def test_plain_adjustment_has_no_floor(self):
        account = self.store.adjust_balance(self.account.id, "-5.00")
        assert account.balance == Decimal("-5.00")

    def test_conditional_debit_refuses_to_cross_floor(self):
        self.store.adjust_balance(self.account.id, "50.00")

        with pytest.raises(InsufficientFunds):
            self.store.adjust_balance(self.account.id, "-80.00", minimum_balance="0")

        assert self.store.find_by_id(self.account.id).balance == Decimal("50.00")

    def test_conditional_debit_down_to_floor(self):
        self.store.adjust_balance(self.account.id, "50.00")
        account = self.store.adjust_balance(self.account.id, "-50.00", minimum_balance=Decimal("0"))
        assert account.balance == Decimal("0.00")

    def test_amounts_are_rounded_half_up(self):
        account = self.store.adjust_balance(self.account.id, "10.005")
        assert account.balance == Decimal("10.01")

    def test_invalid_deltas(self):
        with pytest.raises(InvalidAmount):
            self.store.adjust_balance(self.account.id, "0")
        with pytest.raises(InvalidAmount):
            self.store.adjust_balance(self.account.id, 10.5)
        with pytest.raises(InvalidAmount):
            self.store.adjust_balance(self.account.id, "abc")

    def test_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.store.adjust_balance("missing", "1.00")

    def test_adjustments_are_audited(self):
        self.store.adjust_balance(self.account.id, "25.00")
        events = self.audit_trail.get_events_by_type(AuditEventType.BALANCE_ADJUSTED)

        assert len(events) == 1
        assert events[0].metadata["balance_before"] == "0.00"
        assert events[0].metadata["balance_after"] == "25.00"

    def test_concurrent_debits_never_overdraw(self):
        self.store.adjust_balance(self.account.id, "50.00")
        succeeded = []
        refused = []

        def debit():
            try:
                self.store.adjust_balance(self.account.id, "-10.00", minimum_balance="0")
                succeeded.append(True)
            except InsufficientFunds:
                refused.append(True)

        threads = [threading.Thread(target=debit) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(succeeded) == 5
        assert len(refused) == 7
        assert self.store.find_by_id(self.account.id).balance == Decimal("0.00")


class TestMovements(AccountStoreTestCase):

    def setup_method(self):
        super().setup_method()
        self.account = self.store.create_account("owner-1")
        self.store.adjust_balance(self.account.id, "100.00")

    def test_record_movement_does_not_touch_balance(self):
        movement, created = self.store.record_movement(
            self.account.id, "-30.00", "TXN-1:debit", transaction_id="t1", description="rent"
        )

        assert created is True
        assert movement.delta == Decimal("-30.00")
        assert movement.transaction_id == "t1"
        assert self.store.find_by_id(self.account.id).balance == Decimal("100.00")

    def test_record_movement_is_idempotent(self):
        first, created_first = self.store.record_movement(self.account.id, "-30.00", "TXN-1:debit")
        again, created_again = self.store.record_movement(self.account.id, "-30.00", "TXN-1:debit")

        assert created_first is True
        assert created_again is False
        assert again.id == first.id
        assert len(self.store.get_movements(self.account.id)) == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.MOVEMENT_RECORDED)) == 1

    def test_movement_for_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.store.record_movement("missing", "1.00", "TXN-1:credit")

    def test_get_movements_newest_first(self):
        for i in range(3):
            self.store.record_movement(self.account.id, f"{i + 1}.00", f"TXN-{i}:credit")

        movements = self.store.get_movements(self.account.id)
        assert [m.movement_ref for m in movements] == ["TXN-2:credit", "TXN-1:credit", "TXN-0:credit"]
        assert len(self.store.get_movements(self.account.id, limit=2)) == 2


class TestRestrictions(AccountStoreTestCase):

    def setup_method(self):
        super().setup_method()
        self.account = self.store.create_account("owner-1")

    def test_add_restriction(self):
        account = self.store.add_restriction(self.account.id, "0", "100", pattern_ref="pattern-1")

        assert len(account.restrictions) == 1
        restriction = account.restrictions[0]
        assert restriction.amount_from == Decimal("0.00")
        assert restriction.amount_to == Decimal("100.00")
        assert restriction.pattern_ref == "pattern-1"
        assert restriction.created_at is not None

    def test_touching_ranges_overlap(self):
        self.store.add_restriction(self.account.id, "0", "100")

        with pytest.raises(OverlappingRange):
            self.store.add_restriction(self.account.id, "100", "200")

        assert len(self.store.get_restrictions(self.account.id)) == 1

    def test_disjoint_ranges_allowed(self):
        self.store.add_restriction(self.account.id, "500", "1000")
        self.store.add_restriction(self.account.id, "0", "99.99")
        self.store.add_restriction(self.account.id, "100", "200")

        restrictions = self.store.get_restrictions(self.account.id)
        assert [r.amount_from for r in restrictions] == [
            Decimal("0.00"), Decimal("100.00"), Decimal("500.00")
        ]

    def test_enclosing_range_overlaps(self):
        self.store.add_restriction(self.account.id, "100", "200")
        with pytest.raises(OverlappingRange):
            self.store.add_restriction(self.account.id, "50", "500")

    def test_invalid_ranges(self):
        with pytest.raises(InvalidRange):
            self.store.add_restriction(self.account.id, "100", "100")
        with pytest.raises(InvalidRange):
            self.store.add_restriction(self.account.id, "200", "100")
        with pytest.raises(InvalidRange):
            self.store.add_restriction(self.account.id, "-1", "100")

    def test_update_restriction(self):
        account = self.store.add_restriction(self.account.id, "0", "100", pattern_ref="p1")
        restriction_id = account.restrictions[0].id

        updated = self.store.update_restriction(self.account.id, restriction_id, {"amount_to": "150"})

        restriction = updated.restrictions[0]
        assert restriction.amount_from == Decimal("0.00")
        assert restriction.amount_to == Decimal("150.00")
        assert restriction.pattern_ref == "p1"

    def test_update_restriction_cannot_overlap_another(self):
        self.store.add_restriction(self.account.id, "0", "100")
        account = self.store.add_restriction(self.account.id, "200", "300")
        second = next(r for r in account.restrictions if r.amount_from == Decimal("200.00"))

        with pytest.raises(OverlappingRange):
            self.store.update_restriction(self.account.id, second.id, {"amount_from": "100"})

    def test_update_restriction_may_overlap_itself(self):
        account = self.store.add_restriction(self.account.id, "0", "100")
        restriction_id = account.restrictions[0].id

        updated = self.store.update_restriction(self.account.id, restriction_id, {"amount_from": "50"})
        assert updated.restrictions[0].amount_from == Decimal("50.00")

    def test_update_restriction_rejects_unknown_fields(self):
        account = self.store.add_restriction(self.account.id, "0", "100")
        with pytest.raises(InvalidRange):
            self.store.update_restriction(self.account.id, account.restrictions[0].id, {"owner_id": "x"})

    def test_update_missing_restriction(self):
        with pytest.raises(RestrictionNotFound):
            self.store.update_restriction(self.account.id, "nope", {"amount_to": "10"})

    def test_remove_restriction(self):
        account = self.store.add_restriction(self.account.id, "0", "100")

        updated = self.store.remove_restriction(self.account.id, account.restrictions[0].id)

        assert updated.restrictions == []
        with pytest.raises(RestrictionNotFound):
            self.store.remove_restriction(self.account.id, account.restrictions[0].id)

    def test_restriction_edits_are_audited(self):
        account = self.store.add_restriction(self.account.id, "0", "100")
        restriction_id = account.restrictions[0].id
        self.store.update_restriction(self.account.id, restriction_id, {"pattern_ref": "p2"})
        self.store.remove_restriction(self.account.id, restriction_id)

        types = [e.event_type for e in self.audit_trail.get_events_for_entity("account", self.account.id)]
        assert AuditEventType.RESTRICTION_ADDED in types
        assert AuditEventType.RESTRICTION_UPDATED in types
        assert AuditEventType.RESTRICTION_REMOVED in types

    def test_concurrent_overlapping_adds(self):
        outcomes = []

        def add():
            try:
                self.store.add_restriction(self.account.id, "0", "100")
                outcomes.append("added")
            except OverlappingRange:
                outcomes.append("overlap")

        threads = [threading.Thread(target=add) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("added") == 1
        assert len(self.store.get_restrictions(self.account.id)) == 1


class TestRecords:

    def test_ranges_overlap_is_inclusive(self):
        d = Decimal
        assert ranges_overlap(d("0"), d("100"), d("100"), d("200"))
        assert ranges_overlap(d("100"), d("200"), d("0"), d("100"))
        assert not ranges_overlap(d("0"), d("99.99"), d("100"), d("200"))

    def test_restriction_contains_bounds(self):
        restriction = Restriction(id="r1", amount_from=Decimal("10.00"), amount_to=Decimal("20.00"))
        assert restriction.contains(Decimal("10.00"))
        assert restriction.contains(Decimal("20.00"))
        assert not restriction.contains(Decimal("20.01"))

    def test_account_round_trip(self):
        store = AccountStore(InMemoryStorage(), AuditTrail(InMemoryStorage()), InMemoryUserDirectory({"u"}))
        account = store.create_account("u")
        store.add_restriction(account.id, "1", "2", "p")

        loaded = Account.from_dict(store.find_by_id(account.id).to_dict())
        assert loaded.restrictions[0].pattern_ref == "p"
        assert loaded.status == AccountStatus.ACTIVE
