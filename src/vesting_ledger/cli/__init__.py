"""Command line interface for the vesting ledger."""
