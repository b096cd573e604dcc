"""Transcript engine: validation, hygiene, token budgeting, routing, hashing."""
