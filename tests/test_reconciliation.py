"""
Tests for partial settlements and the reconciliation queue

The accounts side is replaced topic by topic on the command bus to simulate
failures in the middle of a settlement.
"""

import pytest
import threading
from decimal import Decimal

from banking_core.account_service import AccountCommandHandler
from banking_core.audit import AuditEventType
from banking_core.commands import AdjustBalance, RecordMovement
from banking_core.errors import AccountNotFound, CollaboratorUnavailable, NotFoundError
from banking_core.messaging import Topics
from banking_core.orchestrator import COLLABORATOR_TIMEOUT
from banking_core.reconciliation import ReconciliationKind, ReconciliationStatus
from banking_core.transactions import TransactionState

from helpers import EXECUTOR, balance_of, build_system, open_funded_account


class ReconciliationTestCase:

    def setup_method(self):
        self.system = build_system(collaborator_timeout_seconds=0.2)
        self.handler = AccountCommandHandler(self.system.account_store)
        self.origin = open_funded_account(self.system, "owner-1", "100.00")
        self.destination = open_funded_account(self.system, "owner-2")

    def teardown_method(self):
        self.system.close()

    def replace(self, topic, request_model, handler):
        self.system.command_bus.register(topic.value, request_model, handler)

    def restore_accounts_service(self):
        self.handler.register(self.system.command_bus)

    def transfer(self, amount="40"):
        return self.system.orchestrator.transfer(
            self.origin.account_number, self.destination.account_number, amount, EXECUTOR
        )


class TestMissingMovements(ReconciliationTestCase):

    def setup_method(self):
        super().setup_method()

        def broken(request):
            raise RuntimeError("movements table locked")

        self.replace(Topics.ACCOUNTS_RECORD_MOVEMENT, RecordMovement, broken)

    def test_transaction_completes_with_balances_moved(self):
        transaction = self.transfer()

        assert transaction.state == TransactionState.COMPLETADA
        assert balance_of(self.system, self.origin) == Decimal("60.00")
        assert balance_of(self.system, self.destination) == Decimal("40.00")
        assert self.system.account_store.get_movements(self.origin.id) == []

    def test_gap_is_queued_audited_and_published(self):
        transaction = self.transfer()

        items = self.system.reconciliation.list_open(ReconciliationKind.MOVEMENT)
        assert sorted((i.account_id, i.delta) for i in items) == sorted([
            (self.origin.id, Decimal("-40.00")),
            (self.destination.id, Decimal("40.00")),
        ])
        assert {i.movement_ref for i in items} == {
            f"{transaction.transaction_number}:debit",
            f"{transaction.transaction_number}:credit",
        }

        partial = self.system.audit_trail.get_events_by_type(AuditEventType.PARTIAL_SETTLEMENT)
        assert len(partial) == 2
        assert {e.metadata["code"] for e in partial} == {"PARTIAL_SETTLEMENT"}
        events = self.system.event_bus.get_events(Topics.TRANSACTIONS_PARTIAL_SETTLEMENT.value)
        assert len(events) == 2
        assert {event.data["code"] for _, event, _ in events} == {"PARTIAL_SETTLEMENT"}
        assert all(event.data["transaction_number"] == transaction.transaction_number for _, event, _ in events)

    def test_retry_records_missing_movements_once(self):
        transaction = self.transfer()
        self.restore_accounts_service()

        result = self.system.reconciliation.retry_movements()

        assert result == {"retried": 2, "resolved": 2, "still_open": 0}
        assert self.system.reconciliation.list_open() == []
        debit = self.system.account_store.get_movements(self.origin.id)
        assert [m.movement_ref for m in debit] == [f"{transaction.transaction_number}:debit"]
        # Balances were already right and stay right
        assert balance_of(self.system, self.origin) == Decimal("60.00")

        assert self.system.reconciliation.retry_movements() == {"retried": 0, "resolved": 0, "still_open": 0}

    def test_failed_retry_stays_open(self):
        self.transfer()

        result = self.system.reconciliation.retry_movements()

        assert result == {"retried": 2, "resolved": 0, "still_open": 2}
        assert all(i.attempts == 1 for i in self.system.reconciliation.list_open())


class TestCreditFailure(ReconciliationTestCase):

    def setup_method(self):
        super().setup_method()

        def credit_vanishes(request):
            if request.delta > 0:
                raise AccountNotFound("destination vanished")
            return self.handler.adjust_balance(request)

        self.replace(Topics.ACCOUNTS_ADJUST_BALANCE, AdjustBalance, credit_vanishes)

    def test_debited_transfer_fails_and_is_queued(self):
        with pytest.raises(AccountNotFound):
            self.transfer()

        transaction = self.system.ledger.list_transactions().items[0]
        assert transaction.state == TransactionState.FALLIDA
        assert transaction.failure_reason == "credit failed"
        # No automatic reversal: the origin stays debited until an operator acts
        assert balance_of(self.system, self.origin) == Decimal("60.00")
        assert balance_of(self.system, self.destination) == Decimal("0.00")

        items = self.system.reconciliation.list_open(ReconciliationKind.CREDIT)
        assert len(items) == 1
        assert items[0].account_id == self.destination.id
        assert items[0].delta == Decimal("40.00")

    def test_operator_resolves_item(self):
        with pytest.raises(AccountNotFound):
            self.transfer()
        item = self.system.reconciliation.list_open()[0]

        resolved = self.system.reconciliation.resolve(item.id, "re-credited origin by hand")

        assert resolved.status == ReconciliationStatus.RESOLVED
        assert resolved.resolution_note == "re-credited origin by hand"
        assert resolved.resolved_at is not None
        assert self.system.reconciliation.list_open() == []
        events = self.system.audit_trail.get_events_by_type(AuditEventType.RECONCILIATION_RESOLVED)
        assert [e.entity_id for e in events] == [item.id]

        # Resolving again is a no-op
        assert self.system.reconciliation.resolve(item.id, "again").resolution_note == "re-credited origin by hand"

    def test_deposit_credit_failure_is_not_queued(self):
        with pytest.raises(AccountNotFound):
            self.system.orchestrator.deposit(self.destination.account_number, "10", EXECUTOR)

        assert self.system.reconciliation.list_open() == []


class TestDebitTimeout(ReconciliationTestCase):

    def setup_method(self):
        super().setup_method()
        self.release = threading.Event()

        def hanging_debit(request):
            if request.delta < 0:
                self.release.wait(5)
                raise AccountNotFound("gave up")
            return self.handler.adjust_balance(request)

        self.replace(Topics.ACCOUNTS_ADJUST_BALANCE, AdjustBalance, hanging_debit)

    def teardown_method(self):
        self.release.set()
        super().teardown_method()

    def test_timeout_fails_transaction_and_flags_debit(self):
        with pytest.raises(CollaboratorUnavailable):
            self.transfer()

        transaction = self.system.ledger.list_transactions().items[0]
        assert transaction.state == TransactionState.FALLIDA
        assert transaction.failure_reason == COLLABORATOR_TIMEOUT
        assert balance_of(self.system, self.destination) == Decimal("0.00")

        items = self.system.reconciliation.list_open(ReconciliationKind.DEBIT)
        assert len(items) == 1
        assert items[0].account_id == self.origin.id
        assert items[0].delta == Decimal("-40.00")


class TestQueue(ReconciliationTestCase):

    def test_enqueue_is_deduplicated(self):
        queue = self.system.reconciliation
        first = queue.enqueue(ReconciliationKind.MOVEMENT, "t1", "TXN-1", "acc-1", Decimal("5"), "TXN-1:credit", "x")
        again = queue.enqueue(ReconciliationKind.MOVEMENT, "t1", "TXN-1", "acc-1", Decimal("5"), "TXN-1:credit", "y")

        assert again.id == first.id
        assert again.error == "x"
        assert len(queue.list_open()) == 1

    def test_unknown_item(self):
        with pytest.raises(NotFoundError):
            self.system.reconciliation.get("missing")
