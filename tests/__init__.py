"""Test suite for SampleWeave.

Test organization:
- fixtures/: Mock samples, registries and graphs
- unit/: Unit tests for individual modules, the engine and the CLI

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
