"""Test suite for pseudorep.

Test organization:
- fixtures/: Mock data generators (spatial spots, single-nucleus cells)
- unit/: Unit tests for individual modules

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
