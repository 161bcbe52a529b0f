"""
Hermes SMS service test suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Integration tests (SQLite, in-memory streams and SMS transport)
"""
