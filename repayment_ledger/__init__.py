"""
Loan Repayment Ledger

Amortization, waterfall payment allocation, waivers, restructuring and
foreclosure for disbursed loans. All financial math uses Decimal precision.
"""

__version__ = "1.0.0"
