"""Bridge core: canonical model, routing and supervision."""
