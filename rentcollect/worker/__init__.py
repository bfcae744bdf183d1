"""Background workers (APScheduler)."""
