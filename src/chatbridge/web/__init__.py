"""HTTP helpers for the locally hosted endpoints."""
