"""
SDK for Tip Escrow.

Provides programmatic access to the escrow ledger.
"""

from .escrow_service import EscrowInfo, EscrowService

__all__ = ["EscrowInfo", "EscrowService"]
