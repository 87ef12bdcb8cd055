"""Tip Escrow: escrow ledger for listener tips."""
