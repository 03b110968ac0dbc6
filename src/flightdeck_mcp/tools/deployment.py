"""
Deployment tools for Flightdeck MCP.

Provides tools for releasing iOS applications to TestFlight and for
preparing the signing certificates a release needs.
"""

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

from mcp.types import TextContent

from ..server import mcp
from ..config import FlightdeckConfig, load_config
from ..error_handling import (
    FlightdeckError,
    validate_api_key_id,
    validate_app_identifier,
    validate_issuer_id,
    validate_team_id,
)
from ..deployment.context import open_run_context
from ..deployment.history import HistoryStore
from ..deployment.orchestrator import DeploymentOrchestrator, DeploymentRequest
from ..signing.models import CertificateType
from ..signing.validator import ValidationLevel

logger = logging.getLogger("flightdeck-mcp")


def _text(payload: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


def _parse_types(certificate_types: str) -> tuple[CertificateType, ...]:
    types = []
    for name in certificate_types.split(","):
        if name.strip():
            certificate_type = CertificateType.normalize(name)
            if certificate_type not in types:
                types.append(certificate_type)
    if not types:
        raise ValueError("No certificate types given")
    return tuple(types)


def _resolve_config(
    team_id: Optional[str],
    api_key_id: Optional[str] = None,
    api_issuer_id: Optional[str] = None,
    api_key_path: Optional[str] = None,
) -> FlightdeckConfig:
    """Configured settings for a team, with per-call API key overrides."""
    if team_id:
        team_id = validate_team_id(team_id)
    try:
        config = load_config(team_id)
    except ValueError:
        if not team_id:
            raise
        config = FlightdeckConfig(team_id=team_id)

    overrides: dict[str, Any] = {}
    if api_key_id:
        overrides["api_key_id"] = validate_api_key_id(api_key_id)
    if api_issuer_id:
        overrides["api_issuer_id"] = validate_issuer_id(api_issuer_id)
    if api_key_path:
        overrides["api_key_path"] = Path(api_key_path).expanduser()
    if overrides:
        config = replace(config, **overrides)
    return config


def _run_deployment(config: FlightdeckConfig, request: DeploymentRequest, dry_run: bool) -> dict[str, Any]:
    with open_run_context(config, request) as context:
        orchestrator = DeploymentOrchestrator(context)
        if dry_run:
            result = orchestrator.validate_only(request)
        else:
            result = orchestrator.run(request)
    return result.to_dict()


def _setup_certificates(
    config: FlightdeckConfig,
    types: tuple[CertificateType, ...],
    level: ValidationLevel,
) -> dict[str, Any]:
    with open_run_context(config) as context:
        manager = context.certificates
        try:
            report = manager.ensure_available(types, level)
        except FlightdeckError as e:
            report = e.context.get("report", {})
            result = e.to_dict()
        else:
            result = {"success": True}
        result["team_id"] = config.team_id
        result["certificates"] = {t.value: a.to_dict() for t, a in report.items()}
        result["inventory"] = manager.status(types)
    return result


@mcp.tool()
async def deploy_app(
    app_identifier: str,
    team_id: str,
    scheme: str,
    project_path: str,
    output_dir: Optional[str] = None,
    version_bump: str = "patch",
    configuration: str = "Release",
    certificate_types: str = "development,distribution",
    wait_for_processing: bool = True,
    allow_profile_creation: bool = True,
    api_key_id: Optional[str] = None,
    api_issuer_id: Optional[str] = None,
    api_key_path: Optional[str] = None,
) -> list[TextContent]:
    """Build, sign and upload an iOS app to TestFlight.

    Runs certificate validation, profile validation, version management,
    build and archive, upload and (optionally) processing monitoring. The
    run stops at the first failing phase.

    Args:
        app_identifier: Bundle identifier (e.g., 'com.company.app')
        team_id: 10-character Apple Developer team ID
        scheme: Xcode scheme to archive
        project_path: Path to the .xcodeproj or .xcworkspace
        output_dir: Where archives and packages are written (default: next to the project)
        version_bump: 'none', 'patch', 'minor' or 'major'
        configuration: Build configuration (default 'Release')
        certificate_types: Comma-separated certificate types that must be available
        wait_for_processing: Poll App Store Connect until the build is processed
        allow_profile_creation: Create missing provisioning profiles through App Store Connect
        api_key_id: App Store Connect API key ID (overrides configuration)
        api_issuer_id: App Store Connect issuer ID (overrides configuration)
        api_key_path: Path to the AuthKey .p8 file (overrides configuration)

    Returns:
        Deployment result with status, version, per-phase history and the
        TestFlight URL. On failure: the failing phase, the error, recovery
        suggestions and the artifacts left in place.
    """
    try:
        config = _resolve_config(team_id, api_key_id, api_issuer_id, api_key_path)
        project = Path(project_path).expanduser()
        request = DeploymentRequest(
            app_identifier=app_identifier,
            team_id=config.team_id,
            scheme=scheme,
            project_path=project,
            output_dir=Path(output_dir).expanduser() if output_dir else project.parent / "build",
            configuration=configuration,
            version_bump=version_bump,
            required_types=_parse_types(certificate_types),
            wait_for_processing=wait_for_processing,
            allow_profile_creation=allow_profile_creation,
        )

        result = await asyncio.to_thread(_run_deployment, config, request, False)
        return _text(result)

    except FlightdeckError as e:
        return _text(e.to_dict())

    except ValueError as e:
        # Validation errors
        return _text({
            "error": str(e),
            "hint": "Check the app identifier, team ID, scheme and version_bump values"
        })

    except Exception as e:
        # Generic errors - don't expose internals
        logger.error(f"Deployment of {app_identifier} failed: {e}", exc_info=True)
        return _text({
            "error": "Deployment failed unexpectedly",
            "hint": "Check the server log and run validate_deployment to narrow down the problem"
        })


@mcp.tool()
async def validate_deployment(
    app_identifier: str,
    team_id: str,
    scheme: str,
    project_path: str,
    certificate_types: str = "development,distribution",
    allow_profile_creation: bool = True,
    api_key_id: Optional[str] = None,
    api_issuer_id: Optional[str] = None,
    api_key_path: Optional[str] = None,
    info_plist_path: Optional[str] = None,
    strict_privacy: bool = False,
) -> list[TextContent]:
    """Check that a deployment could run, without building or uploading.

    Runs the certificate and profile validation phases, then preflight checks
    of the local tools, API key, project, scheme and the Info.plist privacy
    usage descriptions.

    Args:
        app_identifier: Bundle identifier
        team_id: 10-character Apple Developer team ID
        scheme: Xcode scheme
        project_path: Path to the .xcodeproj or .xcworkspace
        certificate_types: Comma-separated certificate types that must be available
        allow_profile_creation: Create missing provisioning profiles through App Store Connect
        api_key_id: App Store Connect API key ID (overrides configuration)
        api_issuer_id: App Store Connect issuer ID (overrides configuration)
        api_key_path: Path to the AuthKey .p8 file (overrides configuration)
        info_plist_path: Info.plist to check (located from build settings when omitted)
        strict_privacy: Fail on placeholder or short usage descriptions too

    Returns:
        Result with status 'validated' or 'failed', the phase history and the preflight report.
    """
    try:
        config = _resolve_config(team_id, api_key_id, api_issuer_id, api_key_path)
        project = Path(project_path).expanduser()
        request = DeploymentRequest(
            app_identifier=app_identifier,
            team_id=config.team_id,
            scheme=scheme,
            project_path=project,
            output_dir=project.parent / "build",
            required_types=_parse_types(certificate_types),
            wait_for_processing=False,
            allow_profile_creation=allow_profile_creation,
            info_plist_path=Path(info_plist_path).expanduser() if info_plist_path else None,
            strict_privacy=strict_privacy,
        )

        result = await asyncio.to_thread(_run_deployment, config, request, True)
        return _text(result)

    except FlightdeckError as e:
        return _text(e.to_dict())

    except ValueError as e:
        return _text({
            "error": str(e),
            "hint": "Check the app identifier, team ID and scheme values"
        })

    except Exception as e:
        logger.error(f"Validation of {app_identifier} failed: {e}", exc_info=True)
        return _text({
            "error": "Validation failed unexpectedly",
            "hint": "Check the server log and the team's credentials directory"
        })


@mcp.tool()
async def setup_certificates(
    team_id: str,
    certificate_types: str = "development,distribution",
    validation_level: str = "standard",
    api_key_id: Optional[str] = None,
    api_issuer_id: Optional[str] = None,
    api_key_path: Optional[str] = None,
) -> list[TextContent]:
    """Make signing certificates available for a team.

    Detects certificates in the keychain, the team's certificates/
    directory and App Store Connect, imports what is usable and creates
    what is missing (revoking expired or unused certificates when the
    account is at its limit).

    Args:
        team_id: 10-character Apple Developer team ID
        certificate_types: Comma-separated types ('development', 'distribution')
        validation_level: 'basic', 'standard' or 'comprehensive'
        api_key_id: App Store Connect API key ID (overrides configuration)
        api_issuer_id: App Store Connect issuer ID (overrides configuration)
        api_key_path: Path to the AuthKey .p8 file (overrides configuration)

    Returns:
        Availability per type (source, reason, recovery) and the inventory
        of every candidate found.
    """
    try:
        config = _resolve_config(team_id, api_key_id, api_issuer_id, api_key_path)
        types = _parse_types(certificate_types)
        level = ValidationLevel(validation_level.strip().lower())

        result = await asyncio.to_thread(_setup_certificates, config, types, level)
        return _text(result)

    except FlightdeckError as e:
        return _text(e.to_dict())

    except ValueError as e:
        return _text({
            "error": str(e),
            "hint": "Use certificate types 'development'/'distribution' and level 'basic', 'standard' or 'comprehensive'"
        })

    except Exception as e:
        logger.error(f"Certificate setup for {team_id} failed: {e}", exc_info=True)
        return _text({
            "error": "Certificate setup failed unexpectedly",
            "hint": "Check keychain access and the team's certificates directory"
        })


@mcp.tool()
async def deployment_status(
    deployment_id: str,
    team_id: Optional[str] = None,
) -> list[TextContent]:
    """Get the recorded history of a deployment.

    Args:
        deployment_id: ID returned by deploy_app (e.g., 'DEPLOY_ABCDE12345_APP_...')
        team_id: Team ID used to locate the configuration

    Returns:
        Status, timestamps, duration and per-phase entries.
    """
    try:
        config = _resolve_config(team_id)
        history = HistoryStore(config.history_dir).load(deployment_id)

        if history is None:
            return _text({
                "error": f"Deployment {deployment_id} not found",
                "hint": "Use list_deployments to find valid deployment IDs"
            })

        return _text(history.to_dict())

    except FlightdeckError as e:
        return _text(e.to_dict())

    except ValueError as e:
        return _text({
            "error": str(e),
            "hint": "Provide a team_id or set FLIGHTDECK_TEAM_ID"
        })

    except Exception as e:
        logger.error(f"Loading deployment {deployment_id} failed: {e}", exc_info=True)
        return _text({
            "error": "Failed to load deployment history",
            "hint": "Check that the data directory is readable"
        })


@mcp.tool()
async def list_deployments(
    team_id: Optional[str] = None,
    app_identifier: Optional[str] = None,
    limit: int = 20,
) -> list[TextContent]:
    """List recorded deployments, most recent first.

    Args:
        team_id: Only deployments for this team
        app_identifier: Only deployments of this bundle identifier
        limit: Maximum number of deployments to return (default 20)

    Returns:
        Summaries with deployment ID, status, app, version and duration.
    """
    try:
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        if app_identifier:
            app_identifier = validate_app_identifier(app_identifier)
        config = _resolve_config(team_id)
        histories = HistoryStore(config.history_dir).list(
            team_id=team_id,
            app_identifier=app_identifier,
            limit=limit,
        )

        formatted = []
        for history in histories:
            formatted.append({
                "deployment_id": history.deployment_id,
                "status": history.status.value,
                "team_id": history.team_id,
                "app_identifier": history.app_identifier,
                "started_at": history.started_at.isoformat() if history.started_at else None,
                "duration": history.formatted_duration,
                "version": history.metadata.get("version"),
                "build_number": history.metadata.get("build"),
                "result": history.metadata.get("result"),
                "error_message": history.error_message,
            })
        return _text(formatted)

    except FlightdeckError as e:
        return _text(e.to_dict())

    except ValueError as e:
        return _text({
            "error": str(e),
            "hint": "Provide a team_id or set FLIGHTDECK_TEAM_ID, and a positive limit"
        })

    except Exception as e:
        logger.error(f"Listing deployments failed: {e}", exc_info=True)
        return _text({
            "error": "Failed to list deployments",
            "hint": "Check that the data directory is readable"
        })
