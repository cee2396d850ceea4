"""
Lending Ledger

Loan lifecycle and repayment ledger for a micro-lending product: a loan
state machine, flat-rate amortization, virtual account balances and an
append-only payment ledger that always reconciles. All money uses Decimal.
"""

__version__ = "1.0.0"
