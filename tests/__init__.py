"""
MetricDB Test Suite.

This package contains:
- unit/: Unit tests (temporary folders, no network)
- integration/: Integration tests (aiohttp test server over a real storage)
"""
