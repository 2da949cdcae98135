"""Credential-preserving generation of the application configuration."""
from __future__ import annotations

import secrets
import string
from collections.abc import Callable, Iterable, Mapping

from ..config import DEFAULT_CRITICAL_KEYS

SAFE_ALPHABET = string.ascii_letters + string.digits
_LOWER_ALPHANUMERIC = string.ascii_lowercase + string.digits


def generate_secret(length: int, *, alphabet: str = SAFE_ALPHABET) -> str:
    """Return a random string of *length* characters drawn from *alphabet*."""
    if length <= 0:
        raise ValueError("length must be greater than zero.")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _generators(prefix: str) -> dict[str, Callable[[dict[str, str]], str]]:
    return {
        "POSTGRES_USER": lambda values: values.get("DB_USER")
        or f"{prefix}_user_{generate_secret(8, alphabet=_LOWER_ALPHANUMERIC)}",
        "DB_USER": lambda values: values.get("POSTGRES_USER")
        or f"{prefix}_user_{generate_secret(8, alphabet=_LOWER_ALPHANUMERIC)}",
        "POSTGRES_PASSWORD": lambda values: values.get("DB_PASSWORD") or generate_secret(32),
        "DB_PASSWORD": lambda values: values.get("POSTGRES_PASSWORD") or generate_secret(32),
        "REDIS_PASSWORD": lambda _values: generate_secret(32),
        "RABBITMQ_USER": lambda _values: (
            f"{prefix}_rabbit_{generate_secret(6, alphabet=_LOWER_ALPHANUMERIC)}"
        ),
        "RABBITMQ_PASSWORD": lambda _values: generate_secret(32),
        "SESSION_SECRET": lambda _values: generate_secret(64),
        "ENCRYPTION_KEY": lambda _values: secrets.token_hex(32),
        "JWT_SECRET": lambda _values: generate_secret(32),
        "ADMIN_PASSWORD": lambda _values: generate_secret(16),
    }


def generate_configuration(
    existing: Mapping[str, str],
    *,
    domain: str | None = None,
    admin_email: str | None = None,
    critical_keys: Iterable[str] = DEFAULT_CRITICAL_KEYS,
    prefix: str = "milou",
) -> dict[str, str]:
    """Return a full configuration built on top of *existing*.

    Every non-empty value already present is kept as is, so credentials of a
    running installation survive reconfiguration. Missing critical values
    are generated. ``DOMAIN`` and ``ADMIN_EMAIL`` are replaced only when a
    new value is supplied.
    """
    values: dict[str, str] = {key: value for key, value in existing.items()}
    generators = _generators(prefix)
    for key in critical_keys:
        if values.get(key, "").strip():
            continue
        generator = generators.get(key, lambda _values: generate_secret(32))
        values[key] = generator(values)

    if domain:
        values["DOMAIN"] = domain
    values.setdefault("DOMAIN", "localhost")
    if admin_email:
        values["ADMIN_EMAIL"] = admin_email
    values.setdefault("ADMIN_EMAIL", f"admin@{values['DOMAIN']}")
    values.setdefault("POSTGRES_DB", f"{prefix}_database")
    values.setdefault("COMPOSE_PROJECT_NAME", prefix)
    return values


__all__ = ["SAFE_ALPHABET", "generate_configuration", "generate_secret"]
