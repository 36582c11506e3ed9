"""
Retail Ledger

A minimal retail-banking ledger: IBAN accounts with Decimal balances,
race-free transfers and an auditable transaction history.
"""

__version__ = "1.0.0"
