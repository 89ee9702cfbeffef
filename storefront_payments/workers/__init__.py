"""Background workers for outbox delivery and stale transaction sweeps."""
