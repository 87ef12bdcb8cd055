"""Storage modules for Tip Escrow."""
