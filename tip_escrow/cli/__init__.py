"""Cli modules for Tip Escrow."""
