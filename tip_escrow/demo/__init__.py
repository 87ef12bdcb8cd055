"""Demo modules for Tip Escrow."""
