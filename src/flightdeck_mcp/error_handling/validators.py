"""
Input validation functions for Flightdeck MCP tools.

Provides validation for common parameters like team IDs, bundle
identifiers, schemes, version bump selectors and App Store Connect
API key references.
"""

import re

from .errors import ValidationError

TEAM_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
API_KEY_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
ISSUER_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)
APP_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)+$")
VERSION_BUMPS = ("none", "patch", "minor", "major")


def validate_team_id(team_id: str) -> str:
    """Validate an Apple Developer team ID.

    Args:
        team_id: The team ID to validate

    Returns:
        The validated team ID

    Raises:
        ValidationError: If the team ID is invalid
    """
    if not team_id:
        raise ValidationError(
            "Team ID cannot be empty. "
            "Hint: Find your team ID under Membership in the Apple Developer portal."
        )

    if not TEAM_ID_PATTERN.match(team_id):
        raise ValidationError(
            f"Invalid team ID format: '{team_id}'. "
            "Must be 10 uppercase letters or digits (e.g., 'ABC1234567'). "
            "Hint: Find your team ID under Membership in the Apple Developer portal."
        )

    return team_id


def validate_app_identifier(app_identifier: str) -> str:
    """Validate a bundle identifier such as 'com.company.app'.

    Args:
        app_identifier: The bundle identifier to validate

    Returns:
        The validated bundle identifier

    Raises:
        ValidationError: If the identifier is invalid
    """
    if not app_identifier:
        raise ValidationError(
            "App identifier cannot be empty. "
            "Hint: Use the PRODUCT_BUNDLE_IDENTIFIER from your Xcode target."
        )

    if "*" in app_identifier:
        raise ValidationError(
            f"App identifier cannot be a wildcard: '{app_identifier}'. "
            "Hint: Wildcards are only valid in provisioning profiles."
        )

    if not APP_IDENTIFIER_PATTERN.match(app_identifier):
        raise ValidationError(
            f"Invalid app identifier format: '{app_identifier}'. "
            "Must be reverse-DNS (e.g., 'com.company.app'). "
            "Hint: Use the PRODUCT_BUNDLE_IDENTIFIER from your Xcode target."
        )

    return app_identifier


def validate_scheme(scheme: str) -> str:
    """Validate an Xcode scheme name.

    Raises:
        ValidationError: If the scheme is empty or contains path separators
    """
    if not scheme or not scheme.strip():
        raise ValidationError(
            "Scheme cannot be empty. "
            "Hint: Run 'xcodebuild -list' in the project directory to see schemes."
        )

    if "/" in scheme or "\x00" in scheme:
        raise ValidationError(
            f"Invalid scheme name: '{scheme}'. "
            "Hint: Run 'xcodebuild -list' in the project directory to see schemes."
        )

    return scheme.strip()


def validate_version_bump(version_bump: str) -> str:
    """Validate a version bump selector.

    Args:
        version_bump: One of 'none', 'patch', 'minor', 'major'

    Returns:
        The normalized (lowercase) selector

    Raises:
        ValidationError: If the selector is unknown
    """
    normalized = (version_bump or "").strip().lower()
    if normalized not in VERSION_BUMPS:
        raise ValidationError(
            f"Invalid version bump: '{version_bump}'. "
            f"Must be one of: {', '.join(VERSION_BUMPS)}. "
            "Hint: Use 'none' to keep the marketing version and only bump the build number."
        )
    return normalized


def validate_api_key_id(key_id: str) -> str:
    """Validate an App Store Connect API key ID.

    Raises:
        ValidationError: If the key ID is invalid
    """
    if not key_id or not API_KEY_ID_PATTERN.match(key_id):
        raise ValidationError(
            f"Invalid API key ID: '{key_id}'. "
            "Must be 10 uppercase letters or digits. "
            "Hint: The key ID is part of the AuthKey_<KEYID>.p8 filename."
        )
    return key_id


def validate_issuer_id(issuer_id: str) -> str:
    """Validate an App Store Connect issuer ID (lowercase UUID).

    Raises:
        ValidationError: If the issuer ID is invalid
    """
    if not issuer_id or not ISSUER_ID_PATTERN.match(issuer_id):
        raise ValidationError(
            f"Invalid issuer ID: '{issuer_id}'. "
            "Must be a UUID (e.g., '69a6de7f-...'). "
            "Hint: Copy the issuer ID from Users and Access > Integrations in App Store Connect."
        )
    return issuer_id


def validate_timeout(timeout: int, min_val: int = 1, max_val: int = 7200) -> int:
    """Validate a timeout in seconds.

    Raises:
        ValidationError: If the timeout is out of range
    """
    if timeout < min_val:
        raise ValidationError(
            f"Timeout must be at least {min_val} seconds, got {timeout}. "
            "Hint: Use a positive number of seconds."
        )

    if timeout > max_val:
        raise ValidationError(
            f"Timeout cannot exceed {max_val} seconds, got {timeout}. "
            "Hint: Processing rarely takes more than 30 minutes; check status later instead."
        )

    return timeout
