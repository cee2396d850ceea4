"""
Concurrency tests

Many threads repaying one loan, debiting one account, or replaying one
gateway reference must leave the ledger exactly as a serial run would.
"""

import pytest
import threading
from decimal import Decimal

from lending_ledger.config import LedgerConfig
from lending_ledger.currency import Money, Currency
from lending_ledger.storage import InMemoryStorage, SQLiteStorage
from lending_ledger.service import build_ledger
from lending_ledger.models import LoanStatus, PaymentStatus, PaymentType
from lending_ledger.exceptions import InsufficientFundsError, LoanNotActiveError, OverpaymentError


def ngn(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.NGN)


def run_threads(target, count):
    barrier = threading.Barrier(count)
    results = []
    lock = threading.Lock()

    def worker(n):
        barrier.wait()
        try:
            outcome = target(n)
        except Exception as e:
            outcome = e
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    config = LedgerConfig(database_url="memory://", max_conflict_retries=10)
    if request.param == "memory":
        storage = InMemoryStorage(lock_timeout=10.0)
    else:
        storage = SQLiteStorage(tmp_path / "ledger.db", lock_timeout=10.0)
    ledger = build_ledger(config, storage=storage)
    yield ledger
    storage.close()


def active_loan(ledger):
    loan = ledger.state_machine.submit("user-1", "50000", "Stock", 12)
    return ledger.state_machine.approve(loan.id, "officer", 720, "0.2")


class TestConcurrentRepayments:
    """Racing repayments against one loan"""

    def test_parallel_installments(self, ledger):
        """Twelve parallel installments repay and close the loan exactly"""
        loan = active_loan(ledger)

        results = run_threads(
            lambda n: ledger.processor.apply_repayment(loan.id, ngn(5000), f"PSK-{n}", "card"),
            12
        )

        assert all(not isinstance(r, Exception) for r in results)
        closed = ledger.get_loan(loan.id)
        assert closed.status == LoanStatus.CLOSED
        assert closed.amount_repaid == ngn(60000)
        assert ledger.processor.repaid_total(loan.id) == ngn(60000)

    def test_parallel_overpayment_race(self, ledger):
        """When repayments together exceed the balance, the excess ones are refused"""
        loan = active_loan(ledger)
        ledger.processor.apply_repayment(loan.id, ngn(50000), "PSK-first", "card")

        results = run_threads(
            lambda n: ledger.processor.apply_repayment(loan.id, ngn(4000), f"PSK-{n}", "card"),
            5
        )

        applied = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, (OverpaymentError, LoanNotActiveError))]
        assert len(applied) == 2
        assert len(refused) == 3
        assert ledger.get_loan(loan.id).amount_repaid == ngn(58000)

    def test_replayed_reference_applies_once(self, ledger):
        """Ten deliveries of one webhook create one payment"""
        loan = active_loan(ledger)

        results = run_threads(
            lambda n: ledger.processor.apply_repayment(loan.id, ngn(5000), "PSK-dup", "card"),
            10
        )

        assert all(not isinstance(r, Exception) for r in results)
        assert len({r.id for r in results}) == 1
        assert ledger.processor.outstanding_balance(loan.id) == ngn(55000)
        repayments = [p for p in ledger.get_statement(loan.id)
                      if p.payment_type == PaymentType.LOAN_REPAYMENT]
        assert len(repayments) == 1


class TestConcurrentDebits:
    """Racing debits against one account"""

    def test_balance_never_negative(self, ledger):
        """Only as many debits succeed as the balance covers"""
        account = ledger.accounts.open_account("user-9")
        ledger.accounts.credit(account.id, ngn(10000), "DEP-1")

        results = run_threads(
            lambda n: ledger.accounts.debit(account.id, ngn(3000), f"WD-{n}"),
            6
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        assert len(succeeded) == 3
        assert all(isinstance(r, InsufficientFundsError) for r in results if isinstance(r, Exception))
        assert ledger.get_account(account.id).balance == ngn(1000)
        assert ledger.accounts.reconcile(account.id).is_balanced

    def test_confirm_and_fail_race(self, ledger):
        """A pending payment ends in exactly one terminal state"""
        loan = active_loan(ledger)
        pending = ledger.processor.initiate_repayment(loan.id, ngn(5000), "BT-1", "bank_transfer")

        def settle(n):
            if n % 2:
                return ledger.processor.confirm_repayment(pending.id)
            return ledger.processor.fail_payment(pending.id, "Reversed by bank")

        run_threads(settle, 6)

        final = ledger.store.get_payment(pending.id)
        assert final.status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)
        expected = ngn(55000) if final.status == PaymentStatus.COMPLETED else ngn(60000)
        assert ledger.processor.outstanding_balance(loan.id) == expected
