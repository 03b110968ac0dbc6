"""
Error handling utilities for Flightdeck MCP server.

Provides the error taxonomy, input validators and HTTP error mapping.
"""

from .errors import (
    RECOVERY_STRATEGIES,
    FlightdeckError,
    CertificateError,
    ProfileError,
    BuildError,
    UploadError,
    APIError,
    ValidationError,
    CredentialStoreError,
    classify_error,
)
from .validators import (
    validate_team_id,
    validate_app_identifier,
    validate_scheme,
    validate_version_bump,
    validate_api_key_id,
    validate_issuer_id,
    validate_timeout,
)
from .http_handlers import (
    is_retryable_http_error,
    map_http_error,
    api_error_from_http,
)

__all__ = [
    # Errors
    "RECOVERY_STRATEGIES",
    "FlightdeckError",
    "CertificateError",
    "ProfileError",
    "BuildError",
    "UploadError",
    "APIError",
    "ValidationError",
    "CredentialStoreError",
    "classify_error",
    # Validators
    "validate_team_id",
    "validate_app_identifier",
    "validate_scheme",
    "validate_version_bump",
    "validate_api_key_id",
    "validate_issuer_id",
    "validate_timeout",
    # HTTP handlers
    "is_retryable_http_error",
    "map_http_error",
    "api_error_from_http",
]
