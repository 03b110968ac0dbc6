"""Mock implementations for flightdeck-mcp tests.

Provides mock objects for:
- The macOS keychain
- App Store Connect
- xcodebuild
"""

from .apple import FakePortal, FakeToolchain, InMemoryCredentialStore

__all__ = ["FakePortal", "FakeToolchain", "InMemoryCredentialStore"]
