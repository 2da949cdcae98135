"""Setup orchestration: detection, mode selection and the privilege drop."""
from __future__ import annotations

from .credentials import generate_configuration, generate_secret
from .detection import (
    DetectionReport,
    FreshIndicators,
    InstallationState,
    InstallationStateDetector,
)
from .freshness import is_source_newer
from .modes import SetupFlags, SetupMode, select_mode, underlying_mode
from .orchestrator import (
    PrerequisiteError,
    SetupError,
    SetupOrchestrator,
    SetupRequest,
    SetupResult,
)
from .privileges import (
    CredentialFormatError,
    PrivilegeSwitch,
    PrivilegeSwitchError,
    SwitchInvariantError,
    SwitchLoopError,
    SwitchPlan,
)
from .service_accounts import (
    ServiceAccountAction,
    ServiceAccountError,
    ServiceAccountManager,
    ServiceAccountPlan,
    ServiceAccountSpec,
    ServiceAccountStatus,
    apply_service_account_plan,
    inspect_service_account,
    plan_service_account,
)

__all__ = [
    # detection
    "DetectionReport",
    "FreshIndicators",
    "InstallationState",
    "InstallationStateDetector",
    "is_source_newer",
    # mode selection
    "SetupFlags",
    "SetupMode",
    "select_mode",
    "underlying_mode",
    # orchestration
    "PrerequisiteError",
    "SetupError",
    "SetupOrchestrator",
    "SetupRequest",
    "SetupResult",
    "generate_configuration",
    "generate_secret",
    # privilege switch
    "CredentialFormatError",
    "PrivilegeSwitch",
    "PrivilegeSwitchError",
    "SwitchInvariantError",
    "SwitchLoopError",
    "SwitchPlan",
    # service account helpers
    "ServiceAccountAction",
    "ServiceAccountError",
    "ServiceAccountManager",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "inspect_service_account",
    "plan_service_account",
]
