"""Shared infrastructure: errors, logging, database sessions, metrics."""
