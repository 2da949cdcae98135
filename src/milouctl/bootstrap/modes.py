"""Mapping from installation state and operator flags to a setup mode."""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from .detection import InstallationState


class SetupMode(str, Enum):
    """Orchestration strategy for one setup run."""

    INSTALL = "install"
    RESUME = "resume"
    RECONFIGURE = "reconfigure"
    REPAIR = "repair"
    UPDATE_CHECK = "update_check"
    NON_INTERACTIVE = "non_interactive"


@dataclass(frozen=True)
class SetupFlags:
    """Operator flags that influence mode selection."""

    credential_present: bool = False
    non_interactive: bool = False
    force_fresh: bool = False
    update_check: bool = False


_STATE_MODES: dict[InstallationState, SetupMode] = {
    InstallationState.FRESH: SetupMode.INSTALL,
    InstallationState.CONFIGURED_ONLY: SetupMode.RECONFIGURE,
    # Containers without a configuration need a configuration written for them.
    InstallationState.CONTAINERS_ONLY: SetupMode.RECONFIGURE,
    InstallationState.BROKEN: SetupMode.REPAIR,
}


def select_mode(state: InstallationState, flags: SetupFlags) -> SetupMode:
    """Return the setup mode for *state* under *flags*.

    Precedence: a non-interactive request or a supplied credential wins,
    then an explicit fresh install, then the detected state.
    """
    if flags.non_interactive or flags.credential_present:
        return SetupMode.NON_INTERACTIVE
    if flags.force_fresh:
        return SetupMode.INSTALL
    if state in (InstallationState.RUNNING, InstallationState.STOPPED_INSTALLED):
        return SetupMode.UPDATE_CHECK if flags.update_check else SetupMode.RESUME
    return _STATE_MODES[state]


def underlying_mode(state: InstallationState, flags: SetupFlags) -> SetupMode:
    """Return the strategy a non-interactive run carries out for *state*."""
    return select_mode(state, replace(flags, non_interactive=False, credential_present=False))


__all__ = ["SetupFlags", "SetupMode", "select_mode", "underlying_mode"]
