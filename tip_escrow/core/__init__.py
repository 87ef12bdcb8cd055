"""
Core modules for Tip Escrow.

This package contains money arithmetic, ownership resolution, allocation,
the escrow ledger, matching and payout eligibility.
"""
