"""Core vesting accounting components."""
