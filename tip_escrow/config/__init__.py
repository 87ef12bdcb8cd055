"""Config modules for Tip Escrow."""
