"""
Banking Core

Money-movement and authorization-restriction engine for a multi-service
banking system: account balances and restrictions, the transaction ledger
and its state machine, and the orchestrator that settles transfers across
service boundaries.
"""

__version__ = "1.0.0"
