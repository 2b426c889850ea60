"""
Bank Ledger

Bank accounts backed by an append-only credit/debit ledger. Balances are
derived from the ledger on demand and withdrawals are gated on sufficient
funds atomically per account.
"""

__version__ = "1.0.0"
