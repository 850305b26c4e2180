"""
Test suite for the Activity Tracker API.

This package contains:
- unit/: Pure workflow, reorder, token and model tests
- integration/: HTTP tests through the Flask test client
"""
