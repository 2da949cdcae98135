"""Tests for capturing and replaying the CLI invocation."""
from __future__ import annotations

from pathlib import Path

import pytest

from milouctl.invocation import (
    ORIGINAL_ARGS_ENV,
    ORIGINAL_COMMAND_ENV,
    TOKEN_ENV,
    TOKEN_FILE_ENV,
    USER_SWITCH_ENV,
    InvocationError,
    PreservedInvocation,
    RuntimeOptions,
    consume_token_file,
)


@pytest.mark.parametrize(
    "arguments",
    [
        (),
        ("setup", "--force"),
        ("config", "set", "DOMAIN=with space"),
        ("setup", "--domain", "it's \"quoted\""),
        ("setup", "--admin-email", "a;b|c&d$(e)`f`"),
        ("", "trailing\\backslash\\"),
    ],
)
def test_arguments_survive_the_handover(arguments: tuple[str, ...]) -> None:
    """Arguments decode to exactly what was captured, metacharacters included."""
    captured = PreservedInvocation.capture(["/usr/bin/milouctl", *arguments])
    environ = dict(captured.overlay())

    resumed = PreservedInvocation.resume(environ)

    assert resumed is not None
    assert resumed.arguments == arguments
    assert resumed.command == "milouctl"


def test_resume_consumes_the_overlay() -> None:
    """The preserved vector is popped so it is replayed only once."""
    environ = PreservedInvocation.capture(["milouctl", "status"]).overlay()

    assert PreservedInvocation.resume(environ) is not None
    assert ORIGINAL_ARGS_ENV not in environ
    assert ORIGINAL_COMMAND_ENV not in environ
    assert PreservedInvocation.resume(environ) is None


def test_resume_keeps_switch_marker() -> None:
    """The user-switch marker stays in the environment for the loop guard."""
    environ = {ORIGINAL_ARGS_ENV: "setup", USER_SWITCH_ENV: "milou"}

    resumed = PreservedInvocation.resume(environ)

    assert resumed is not None
    assert environ[USER_SWITCH_ENV] == "milou"
    assert resumed.environment[USER_SWITCH_ENV] == "milou"


def test_malformed_stream_raises() -> None:
    """An unterminated quote cannot be decoded."""
    with pytest.raises(InvocationError):
        PreservedInvocation.resume({ORIGINAL_ARGS_ENV: "setup 'unterminated"})


def test_python_module_invocation_is_named_after_the_program() -> None:
    """`python -m milouctl` is recorded under the program name."""
    assert PreservedInvocation.capture(["/x/milouctl/__main__.py", "status"]).command == "milouctl"
    assert PreservedInvocation.capture(["python3.12"]).command == "milouctl"


def test_without_option_strips_both_spellings() -> None:
    """Token options are removed in separate and joined forms."""
    invocation = PreservedInvocation.capture(
        ["milouctl", "setup", "--token", "ghp_x", "--force", "--token=ghp_y"]
    )

    assert invocation.without_option("--token").arguments == ("setup", "--force")


def test_display_masks_secrets() -> None:
    """Rendered command lines never show the token."""
    invocation = PreservedInvocation.capture(["milouctl", "setup", "--token", "s3cret"])

    assert "s3cret" not in invocation.display(["s3cret"])


def test_runtime_options_merge_flags_and_environment() -> None:
    """A switch is on when either the flag or the overlay sets it."""
    env = {"MILOUCTL_DRY_RUN": "true", "MILOUCTL_FORCE": "false", TOKEN_ENV: "ghp_env"}

    options = RuntimeOptions.from_environment(env, force=True)

    assert options.dry_run is True
    assert options.force is True
    assert options.non_interactive is False
    assert options.token == "ghp_env"
    assert options.to_dict()["token"] == "********"
    assert "ghp_env" not in repr(options)


def test_runtime_options_overlay_round_trip() -> None:
    """The overlay reproduces the same options in a resumed process."""
    options = RuntimeOptions(verbose=True, update_check=True, token="tok")

    rebuilt = RuntimeOptions.from_environment(options.overlay())

    assert rebuilt == options


def test_consume_token_file_reads_and_deletes(tmp_path: Path) -> None:
    """The handed-over token file is single use."""
    token_file = tmp_path / ".token"
    token_file.write_text("ghp_secret\n")
    environ = {TOKEN_FILE_ENV: str(token_file)}

    assert consume_token_file(environ) == "ghp_secret"
    assert environ == {TOKEN_ENV: "ghp_secret"}
    assert not token_file.exists()
    assert consume_token_file(environ) is None


def test_consume_token_file_tolerates_missing_file(tmp_path: Path) -> None:
    """A token file that is already gone is not an error."""
    environ = {TOKEN_FILE_ENV: str(tmp_path / "gone")}

    assert consume_token_file(environ) is None
    assert environ == {}
