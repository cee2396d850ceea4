"""
Amortization Module

Flat-rate repayment schedules. Interest is charged once on the principal
(total = principal * (1 + rate)) and the total is split into equal
installments; the final installment absorbs the rounding remainder so the
schedule always sums exactly to the total amount.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, InvalidOperation
from datetime import date
from dataclasses import dataclass, field
from typing import List, Optional, Union
import calendar

from .currency import Money, quantize
from .exceptions import InvalidAmountError, InvalidTermError, InvalidRateError


@dataclass(frozen=True)
class Installment:
    """Single entry in a repayment schedule"""
    number: int
    amount: Money
    due_date: Optional[date] = None


@dataclass(frozen=True)
class Schedule:
    """Full repayment schedule for a principal, rate and term"""
    principal: Money
    rate: Decimal
    term: int
    installment: Money
    final_installment: Money
    total_amount: Money
    total_interest: Money
    installments: List[Installment] = field(default_factory=list)

    def next_installment(self, amount_repaid: Money) -> Optional[Installment]:
        """First installment not yet fully covered by ``amount_repaid``"""
        covered = Money.zero(self.total_amount.currency)
        for installment in self.installments:
            covered = covered + installment.amount
            if covered > amount_repaid:
                return installment
        return None


def validate_rate(rate: Union[Decimal, int, str]) -> Decimal:
    """
    Parse an interest rate and check it lies in [0, 1]

    Raises:
        InvalidRateError
    """
    if isinstance(rate, float):
        rate = str(rate)
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError):
        raise InvalidRateError(f"Interest rate {rate!r} is not a number", {"rate": str(rate)})
    if not value.is_finite() or value < Decimal('0') or value > Decimal('1'):
        raise InvalidRateError(f"Interest rate must be between 0 and 1, got {rate}",
                               {"rate": str(rate)})
    return value


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def compute_schedule(
    principal: Money,
    rate: Union[Decimal, int, str],
    term: int,
    first_due_date: Optional[date] = None
) -> Schedule:
    """
    Compute a flat-rate schedule

    Args:
        principal: Amount borrowed, must be positive
        rate: Interest rate for the whole term, between 0 and 1
        term: Number of monthly installments, a positive integer
        first_due_date: Due date of installment 1; later ones follow monthly

    Returns:
        Schedule whose installments sum exactly to total_amount

    Raises:
        InvalidTermError, InvalidAmountError, InvalidRateError
    """
    if isinstance(term, bool) or not isinstance(term, int) or term <= 0:
        raise InvalidTermError(f"Term must be a positive whole number of months, got {term!r}",
                               {"term": str(term)})
    if not principal.is_positive():
        raise InvalidAmountError(f"Principal must be positive, got {principal.to_string()}",
                                 {"principal": str(principal.amount)})

    rate = validate_rate(rate)

    currency = principal.currency
    total = quantize(principal.amount * (Decimal('1') + rate), currency)
    installment = quantize(total / Decimal(term), currency, ROUND_HALF_UP)
    final = total - installment * (term - 1)

    if term > 1 and final <= Decimal('0'):
        installment = quantize(total / Decimal(term), currency, ROUND_DOWN)
        final = total - installment * (term - 1)

    installment_money = Money(installment, currency)
    final_money = Money(final, currency)

    installments = []
    for number in range(1, term + 1):
        due = add_months(first_due_date, number - 1) if first_due_date else None
        amount = final_money if number == term else installment_money
        installments.append(Installment(number=number, amount=amount, due_date=due))

    total_money = Money(total, currency)
    return Schedule(
        principal=principal,
        rate=rate,
        term=term,
        installment=installment_money,
        final_installment=final_money,
        total_amount=total_money,
        total_interest=total_money - principal,
        installments=installments
    )


def remaining_balance(total_amount: Money, amount_repaid: Money) -> Money:
    """Amount still owed, never below zero"""
    remaining = total_amount - amount_repaid
    if remaining.is_negative():
        return Money.zero(total_amount.currency)
    return remaining


def repayment_progress(total_amount: Money, amount_repaid: Money) -> Decimal:
    """Percentage of the total repaid, 0 to 100 with two decimals"""
    if total_amount.is_zero():
        return Decimal('100.00')
    progress = amount_repaid.amount / total_amount.amount * Decimal('100')
    progress = min(max(progress, Decimal('0')), Decimal('100'))
    return progress.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
