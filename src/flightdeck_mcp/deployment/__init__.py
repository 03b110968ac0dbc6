"""
TestFlight deployment pipeline.

Provides provisioning profiles, versioning, deployment history, the
six-phase deployment orchestrator and the preflight checks run by
validation. Run wiring lives in flightdeck_mcp.deployment.context.
"""

from .profiles import ProvisioningProfile, ProfileMatcher, ProfileType, load_profile_file
from .versioning import VersionBump, VersionInfo, bump_version
from .history import DeploymentHistory, HistoryStore
from .preflight import Preflight, PreflightReport, check_privacy_descriptions
from .orchestrator import DeploymentOrchestrator, DeploymentRequest, DeploymentResult, Phase

__all__ = [
    "ProvisioningProfile",
    "ProfileMatcher",
    "ProfileType",
    "load_profile_file",
    "VersionBump",
    "VersionInfo",
    "bump_version",
    "DeploymentHistory",
    "HistoryStore",
    "Preflight",
    "PreflightReport",
    "check_privacy_descriptions",
    "DeploymentOrchestrator",
    "DeploymentRequest",
    "DeploymentResult",
    "Phase",
]
