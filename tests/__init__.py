"""
SimpleDB Test Suite.

This package contains:
- unit/: Unit tests (codec, retry/backoff, configuration)
- integration/: Integration tests (real SQLite files, threads, multiple stores)
"""
