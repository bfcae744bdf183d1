"""Core layer: settings, logging, errors, database, security and RBAC."""
