"""Provider interfaces for milouctl."""
from __future__ import annotations

from .docker import ContainerInfo, DockerError, DockerProvider

__all__ = [
    "ContainerInfo",
    "DockerError",
    "DockerProvider",
]
