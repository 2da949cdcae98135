"""Docker provider for probing the engine and driving the compose stack."""
from __future__ import annotations

import re
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

Runner = Callable[..., subprocess.CompletedProcess[str]]

_VERSION_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


class DockerError(RuntimeError):
    """Raised when docker operations fail."""


@dataclass(slots=True, frozen=True)
class ContainerInfo:
    """One managed container as reported by ``docker ps``."""

    name: str
    state: str
    status: str

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is up."""
        return self.state.lower() == "running" or self.status.startswith("Up")

    @property
    def healthy(self) -> bool:
        """Return ``True`` when the container is running and not flagged unhealthy."""
        return self.running and "unhealthy" not in self.status.lower()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state": self.state,
            "status": self.status,
            "running": self.running,
            "healthy": self.healthy,
        }


@dataclass(slots=True)
class DockerProvider:
    """Thin wrapper over the ``docker`` CLI with bounded probe timeouts."""

    docker_bin: str = "docker"
    timeout: float = 5.0
    sudo_bin: str = "sudo"
    runner: Runner | None = None
    which: Callable[[str], str | None] = shutil.which

    # Probes ------------------------------------------------------------
    def is_present(self) -> bool:
        """Return ``True`` when the docker client binary is installed."""
        return self.which(self.docker_bin) is not None

    def is_daemon_reachable(self) -> bool:
        """Return ``True`` when ``docker info`` succeeds within the timeout."""
        return self._probe([self.docker_bin, "info"])

    def compose_available(self) -> bool:
        """Return ``True`` when the ``docker compose`` plugin responds."""
        return self._probe([self.docker_bin, "compose", "version"])

    def client_version(self) -> str | None:
        """Return the docker client version string, or ``None`` if unknown."""
        try:
            result = self._run(
                [self.docker_bin, "version", "--format", "{{.Client.Version}}"],
                check=False,
                timeout=self.timeout,
            )
        except DockerError:
            return None
        text = (result.stdout or "").strip()
        if result.returncode != 0 or not text:
            try:
                result = self._run(
                    [self.docker_bin, "--version"], check=False, timeout=self.timeout
                )
            except DockerError:
                return None
            text = (result.stdout or "").strip()
        match = _VERSION_PATTERN.search(text)
        return match.group(1) if match else None

    def list_containers(self, prefix: str) -> list[ContainerInfo]:
        """Return every container (running or not) whose name starts with *prefix*."""
        result = self._run(
            [
                self.docker_bin,
                "ps",
                "-a",
                "--filter",
                f"name={prefix}",
                "--format",
                "{{.Names}}\t{{.State}}\t{{.Status}}",
            ],
            timeout=self.timeout,
            error_prefix="docker ps",
        )
        containers: list[ContainerInfo] = []
        for line in (result.stdout or "").splitlines():
            if not line.strip():
                continue
            name, _, rest = line.partition("\t")
            state, _, status = rest.partition("\t")
            # The name filter matches substrings; keep only true prefix matches.
            if not name.startswith(prefix):
                continue
            containers.append(
                ContainerInfo(name=name.strip(), state=state.strip(), status=status.strip())
            )
        return containers

    # Actions -----------------------------------------------------------
    def login(
        self,
        registry: str,
        token: str,
        *,
        username: str = "token",
        as_user: str | None = None,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Log in to *registry*, passing *token* on stdin."""
        args = [self.docker_bin, "login", registry, "-u", username, "--password-stdin"]
        if as_user:
            args = [self.sudo_bin, "-u", as_user, "-H", *args]
        return self._run(
            args,
            input=token,
            timeout=max(self.timeout, 30.0),
            error_prefix=f"docker login {registry}",
            dry_run=dry_run,
        )

    def compose_up(
        self,
        compose_file: Path,
        *,
        env_file: Path | None = None,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Start the stack described by *compose_file* in the background."""
        return self._compose(compose_file, ["up", "-d"], env_file=env_file, dry_run=dry_run)

    def compose_pull(
        self,
        compose_file: Path,
        *,
        env_file: Path | None = None,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Fetch newer images for the stack described by *compose_file*."""
        return self._compose(compose_file, ["pull"], env_file=env_file, dry_run=dry_run)

    # ------------------------------------------------------------------
    def _compose(
        self,
        compose_file: Path,
        command: Sequence[str],
        *,
        env_file: Path | None,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.docker_bin, "compose", "-f", str(compose_file)]
        if env_file is not None:
            args.extend(["--env-file", str(env_file)])
        args.extend(command)
        return self._run(
            args,
            error_prefix=f"docker compose {' '.join(command)}",
            dry_run=dry_run,
        )

    def _probe(self, args: Sequence[str]) -> bool:
        try:
            result = self._run(args, check=False, timeout=self.timeout)
        except DockerError:
            return False
        return result.returncode == 0

    def _run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
        timeout: float | None = None,
        error_prefix: str | None = None,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        runner = self.runner or _default_runner
        prefix = error_prefix or " ".join(args[:2])
        try:
            result = runner(list(args), input=input, timeout=timeout)
        except FileNotFoundError as exc:
            raise DockerError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise DockerError(f"{prefix} timed out after {timeout}s") from exc
        except OSError as exc:
            raise DockerError(f"{prefix} could not run: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise DockerError(f"{prefix} failed (exit {result.returncode}): {message}")
        return result


def _default_runner(
    args: list[str],
    *,
    input: str | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603, S607
        args,
        input=input,
        capture_output=True,
        text=True,
        check=False,
        timeout=timeout,
    )


__all__ = ["ContainerInfo", "DockerError", "DockerProvider", "Runner"]
