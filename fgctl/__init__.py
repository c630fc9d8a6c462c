"""Operator command line for the ForgeGuard engine."""
