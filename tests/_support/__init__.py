"""
Test support utilities for stateset tests.

Helpers that don't fit as pytest fixtures but are useful across multiple
test files.
"""
