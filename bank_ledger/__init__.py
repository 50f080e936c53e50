"""
Bank Ledger

Data-access layer for a banking ledger: versioned account/entry schema,
typed query bindings, and a balance-maintaining ledger on top of them.
"""

__version__ = "1.0.0"
