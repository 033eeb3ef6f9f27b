"""
Credit Ledger

Product loan (credit-sale) ledger for a retail shop: tracks what named debtors
owe for goods already delivered, their partial payments, outstanding balances,
overdue debts and debtor transfers. All money math uses Decimal.
"""

__version__ = "1.0.0"
