"""
Error taxonomy for the release pipeline.

Every error carries a machine-readable code, at least one actionable
recovery suggestion, and the context it was raised in (phase, team,
application identifier). Tools surface these as JSON instead of raising.
"""

from typing import Any, Optional


RECOVERY_STRATEGIES: dict[str, list[str]] = {
    "CERTIFICATE_IMPORT_FAILED": [
        "Unlock the keychain and retry the import",
        "Re-export the P12 with the current import password",
        "Import the certificate manually with Keychain Access",
    ],
    "CERTIFICATE_NOT_FOUND": [
        "Create a new certificate through App Store Connect",
        "Check the certificates directory for P12 files",
        "Verify the team ID matches the certificate",
    ],
    "CERTIFICATE_EXPIRED": [
        "Create a replacement certificate through App Store Connect",
        "Revoke the expired certificate to free quota",
    ],
    "CERTIFICATE_QUOTA_EXHAUSTED": [
        "Revoke the oldest certificate to free quota",
        "Reuse an existing certificate exported as P12 from another machine",
    ],
    "CERTIFICATES_UNAVAILABLE": [
        "Place exported P12 files in the team certificates directory",
        "Configure App Store Connect API credentials so certificates can be created",
    ],
    "TEAM_MISMATCH": [
        "Use a certificate issued for the configured team",
        "Check the team ID in the deployment request",
    ],
    "PROFILE_NOT_FOUND": [
        "Create a provisioning profile for the app identifier",
        "Download existing profiles into the team profiles directory",
    ],
    "PROFILE_EXPIRED": [
        "Create a new provisioning profile",
        "Regenerate the profile with the latest certificate",
        "Download the profile from the developer portal",
    ],
    "API_AUTH_FAILED": [
        "Verify the API key ID and issuer ID",
        "Check the AuthKey .p8 file matches the key ID",
        "Confirm the key has not been revoked in App Store Connect",
    ],
    "API_RATE_LIMIT": [
        "Wait and retry with exponential backoff",
        "Reduce API call frequency",
    ],
    "API_UNAVAILABLE": [
        "Check network connectivity",
        "Check the Apple developer system status page",
    ],
    "API_REQUEST_FAILED": [
        "Check the request parameters",
        "Check App Store Connect for account agreements awaiting acceptance",
    ],
    "BUILD_FAILED": [
        "Clean the build folder and retry",
        "Check code signing settings",
        "Verify scheme and configuration",
    ],
    "EXPORT_FAILED": [
        "Check export options and the distribution profile",
        "Inspect the archive left in place",
    ],
    "VERSION_UPDATE_FAILED": [
        "Check project.pbxproj defines MARKETING_VERSION and CURRENT_PROJECT_VERSION",
        "Make sure the project file is writable",
    ],
    "UPLOAD_FAILED": [
        "Check the exported IPA is signed for App Store distribution",
        "Make sure the build number has not been uploaded before",
    ],
    "UPLOAD_TIMEOUT": [
        "Retry upload",
        "Check network connectivity",
        "Verify IPA file integrity",
    ],
    "VALIDATION_FAILED": [
        "Correct the invalid parameter and retry",
    ],
    "PREFLIGHT_FAILED": [
        "Fix the failed preflight checks and validate again",
    ],
    "PRIVACY_DESCRIPTION_MISSING": [
        "Fill in every privacy usage description in Info.plist",
        "Remove usage description keys for resources the app does not use",
    ],
    "KEYCHAIN_LOCKED": [
        "Unlock the keychain and retry",
        "Reset the keychain partition list",
    ],
    "KEYCHAIN_COMMAND_FAILED": [
        "Check the security command output in the logs",
        "Make sure the run is on macOS with the Xcode command line tools installed",
    ],
    "KEYCHAIN_ACCESS_DENIED": [
        "Grant codesign access to the key",
        "Recreate the ephemeral keychain",
    ],
    "DEPLOYMENT_ERROR": [
        "Inspect the deployment history for the failing phase",
    ],
}


class FlightdeckError(Exception):
    """Base class for all release pipeline errors.

    Attributes:
        message: Human-readable description
        error_code: Machine-readable error code
        recovery_suggestions: Actionable next steps (never empty)
        context: Where the error happened (phase, team_id, app_identifier...)
        original: The lower-level exception, if any
    """

    default_code = "DEPLOYMENT_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        recovery_suggestions: Optional[list[str]] = None,
        context: Optional[dict[str, Any]] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.recovery_suggestions = list(
            recovery_suggestions
            or RECOVERY_STRATEGIES.get(self.error_code)
            or RECOVERY_STRATEGIES.get(self.default_code)
            or RECOVERY_STRATEGIES["DEPLOYMENT_ERROR"]
        )
        self.context = dict(context or {})
        self.original = original

    @property
    def kind(self) -> str:
        """Short name of the error class (e.g. 'CertificateError')."""
        return type(self).__name__

    def with_context(self, **context: Any) -> "FlightdeckError":
        """Add context keys without overwriting existing ones."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to a user-facing dictionary (no stack detail)."""
        result = {
            "error": self.message,
            "error_type": self.kind,
            "error_code": self.error_code,
            "suggestions": self.recovery_suggestions,
        }
        context = {
            k: v for k, v in self.context.items()
            if isinstance(v, (str, int, float, bool, list)) or v is None
        }
        if context:
            result["context"] = context
        return result


class CertificateError(FlightdeckError):
    """Certificate not found, invalid, over quota or failed to import."""

    default_code = "CERTIFICATE_NOT_FOUND"


class ProfileError(FlightdeckError):
    """No compatible provisioning profile, or the profile expired."""

    default_code = "PROFILE_NOT_FOUND"


class BuildError(FlightdeckError):
    """Archive, export or version update failed."""

    default_code = "BUILD_FAILED"


class UploadError(FlightdeckError):
    """Upload rejected or timed out."""

    default_code = "UPLOAD_FAILED"


class APIError(FlightdeckError):
    """App Store Connect authentication failure, rate limit or outage."""

    default_code = "API_REQUEST_FAILED"

    def __init__(self, *args: Any, status_code: Optional[int] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.status_code = status_code


class ValidationError(FlightdeckError, ValueError):
    """Malformed input parameters."""

    default_code = "VALIDATION_FAILED"


class CredentialStoreError(FlightdeckError):
    """Keychain locked, access denied or a security command failed."""

    default_code = "KEYCHAIN_ACCESS_DENIED"


def classify_error(
    error: BaseException,
    operation: str,
    context: Optional[dict[str, Any]] = None,
) -> FlightdeckError:
    """Map an arbitrary exception into the error taxonomy.

    Errors already in the taxonomy are returned unchanged (with context
    merged in). Anything else is classified by its message.

    Args:
        error: The exception to classify
        operation: Description of the operation that failed
        context: Extra context to attach

    Returns:
        A FlightdeckError subclass instance
    """
    context = dict(context or {})
    if isinstance(error, FlightdeckError):
        return error.with_context(**context)

    message = str(error)
    lowered = message.lower()

    if ("p12" in lowered or "certificate" in operation.lower()) and (
        "exit status" in lowered or "import" in lowered
    ):
        return CertificateError(
            f"Certificate import failed: {message}",
            error_code="CERTIFICATE_IMPORT_FAILED",
            context=context,
            original=error,
        )
    if "certificate" in lowered and "not found" in lowered:
        return CertificateError(
            f"Certificate not found: {message}",
            error_code="CERTIFICATE_NOT_FOUND",
            context=context,
            original=error,
        )
    if "provisioning profile" in lowered and "expired" in lowered:
        return ProfileError(
            f"Provisioning profile expired: {message}",
            error_code="PROFILE_EXPIRED",
            context=context,
            original=error,
        )
    if "rate limit" in lowered or "too many requests" in lowered:
        return APIError(
            f"API rate limit exceeded: {message}",
            error_code="API_RATE_LIMIT",
            context=context,
            original=error,
        )
    if "build failed" in lowered or "archive failed" in lowered:
        return BuildError(
            f"Build failed: {message}",
            error_code="BUILD_FAILED",
            context=context,
            original=error,
        )
    if "upload" in lowered and ("timeout" in lowered or "timed out" in lowered):
        return UploadError(
            f"Upload timed out: {message}",
            error_code="UPLOAD_TIMEOUT",
            context=context,
            original=error,
        )
    if "upload" in lowered and "failed" in lowered:
        return UploadError(
            f"Upload failed: {message}",
            context=context,
            original=error,
        )
    if "keychain" in lowered and "locked" in lowered:
        return CredentialStoreError(
            f"Keychain locked: {message}",
            error_code="KEYCHAIN_LOCKED",
            context=context,
            original=error,
        )

    return FlightdeckError(
        f"Unexpected error during {operation}: {message}",
        context=dict(context, error_class=type(error).__name__),
        original=error,
    )
