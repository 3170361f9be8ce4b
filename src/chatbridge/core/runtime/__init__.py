"""Bridge runtime: backoff, state tracking and adapter supervision."""
