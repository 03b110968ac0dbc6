"""Tests for Flightdeck MCP.

Test Structure:
    tests/
    ├── conftest.py          # Shared pytest fixtures
    ├── unit/                # Unit tests (no external deps)
    │   ├── test_certificate_manager.py
    │   ├── test_orchestrator.py
    │   ├── test_client.py
    │   └── ...
    ├── integration/         # Integration tests (requires macOS with Xcode)
    │   └── test_keychain.py
    └── mocks/               # Keychain, App Store Connect and xcodebuild fakes
        ├── apple.py
        └── certificates.py

Usage:
    # Run all tests
    pytest

    # Run only unit tests
    pytest -m unit

    # Run only integration tests (requires macOS with Xcode)
    pytest -m integration

    # Run with verbose output
    pytest -v
"""
