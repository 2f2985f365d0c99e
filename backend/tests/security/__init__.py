"""
Security test suite for the bookmark enrichment service.

This module contains security-focused tests that validate:
- Authentication enforcement
- Authorization (IDOR prevention)
- SSRF protection for link checks and screenshots

These tests should be run as part of CI/CD to prevent security regressions.
"""
