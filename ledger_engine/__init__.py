"""
Ledger Consistency Engine

A double-entry ledger with deferred balance validation: drafts may be
transiently unbalanced, posted transactions always net to zero per currency.
All amounts are fixed-point Decimal and every state change is audited.
"""

__version__ = "1.0.0"
