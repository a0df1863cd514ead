"""
Custody Ledger

A custodial pool ledger: per-account balances of one fungible value,
a per-withdrawal ceiling, a global pool capacity, and a hash-chained
record trail.
"""

__version__ = "1.0.0"
