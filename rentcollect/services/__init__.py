"""Domain services of the reconciliation engine."""
