"""Tests for setup mode selection."""
from __future__ import annotations

import itertools

import pytest

from milouctl.bootstrap.detection import InstallationState
from milouctl.bootstrap.modes import SetupFlags, SetupMode, select_mode, underlying_mode

ALL_FLAGS = [
    SetupFlags(
        credential_present=credential,
        non_interactive=non_interactive,
        force_fresh=force_fresh,
        update_check=update_check,
    )
    for credential, non_interactive, force_fresh, update_check in itertools.product(
        (False, True), repeat=4
    )
]


@pytest.mark.parametrize("state", list(InstallationState))
@pytest.mark.parametrize("flags", ALL_FLAGS)
def test_selection_is_total_and_deterministic(state: InstallationState, flags: SetupFlags) -> None:
    """Every state and flag combination maps to exactly one mode."""
    mode = select_mode(state, flags)

    assert isinstance(mode, SetupMode)
    assert select_mode(state, flags) is mode
    assert underlying_mode(state, flags) is not SetupMode.NON_INTERACTIVE


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        (InstallationState.FRESH, SetupMode.INSTALL),
        (InstallationState.RUNNING, SetupMode.RESUME),
        (InstallationState.STOPPED_INSTALLED, SetupMode.RESUME),
        (InstallationState.CONFIGURED_ONLY, SetupMode.RECONFIGURE),
        (InstallationState.CONTAINERS_ONLY, SetupMode.RECONFIGURE),
        (InstallationState.BROKEN, SetupMode.REPAIR),
    ],
)
def test_state_defaults(state: InstallationState, expected: SetupMode) -> None:
    """Without flags the detected state decides."""
    assert select_mode(state, SetupFlags()) is expected


def test_credential_or_non_interactive_wins() -> None:
    """A supplied token or --non-interactive overrides everything else."""
    for flags in (
        SetupFlags(credential_present=True, force_fresh=True),
        SetupFlags(non_interactive=True, update_check=True),
    ):
        assert select_mode(InstallationState.RUNNING, flags) is SetupMode.NON_INTERACTIVE


def test_force_fresh_beats_detected_state() -> None:
    """--fresh-install installs even on a running host."""
    assert select_mode(InstallationState.RUNNING, SetupFlags(force_fresh=True)) is SetupMode.INSTALL


def test_update_check_only_applies_to_installed_hosts() -> None:
    """--update-check matters only when the product is installed."""
    flags = SetupFlags(update_check=True)

    assert select_mode(InstallationState.RUNNING, flags) is SetupMode.UPDATE_CHECK
    assert select_mode(InstallationState.STOPPED_INSTALLED, flags) is SetupMode.UPDATE_CHECK
    assert select_mode(InstallationState.FRESH, flags) is SetupMode.INSTALL
    assert select_mode(InstallationState.BROKEN, flags) is SetupMode.REPAIR


def test_underlying_mode_of_non_interactive_run() -> None:
    """A non-interactive run carries out the strategy the state calls for."""
    flags = SetupFlags(credential_present=True, update_check=True)

    assert underlying_mode(InstallationState.RUNNING, flags) is SetupMode.UPDATE_CHECK
    assert underlying_mode(InstallationState.BROKEN, flags) is SetupMode.REPAIR
