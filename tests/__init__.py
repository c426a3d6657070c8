# StoreGuard Test Suite
"""
Test suite including:
- Unit tests per component
- Integration tests for the login flow
- Security tests (invalid inputs, stale results)

Run with: pytest
Coverage: coverage run -m pytest && coverage report
"""
