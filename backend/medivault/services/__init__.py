"""Business logic for the OTP-gated access workflows.

Each persistence concern is a ``Protocol`` with a SQLAlchemy-backed store and
an in-memory store for tests and local demos.
"""
