"""Tests for credential-preserving configuration generation."""
from __future__ import annotations

import pytest

from milouctl.bootstrap.credentials import SAFE_ALPHABET, generate_configuration, generate_secret
from milouctl.config import DEFAULT_CRITICAL_KEYS


def test_generate_secret() -> None:
    """Secrets have the requested length and alphabet."""
    secret = generate_secret(40)

    assert len(secret) == 40
    assert set(secret) <= set(SAFE_ALPHABET)
    assert generate_secret(40) != secret
    with pytest.raises(ValueError):
        generate_secret(0)


def test_fresh_configuration_fills_every_critical_key() -> None:
    """A first install generates all credentials and sensible defaults."""
    values = generate_configuration({}, domain="milou.example.com")

    for key in DEFAULT_CRITICAL_KEYS:
        assert values[key].strip(), key
    assert values["DOMAIN"] == "milou.example.com"
    assert values["ADMIN_EMAIL"] == "admin@milou.example.com"
    assert values["DB_USER"] == values["POSTGRES_USER"]
    assert values["DB_PASSWORD"] == values["POSTGRES_PASSWORD"]
    assert len(values["ENCRYPTION_KEY"]) == 64


def test_existing_credentials_are_preserved() -> None:
    """Reconfiguration never replaces a non-empty credential."""
    existing = {"DB_PASSWORD": "keep-me", "JWT_SECRET": "also-keep", "DOMAIN": "old.example.com"}

    values = generate_configuration(existing, admin_email="ops@example.com")

    assert values["DB_PASSWORD"] == "keep-me"
    assert values["POSTGRES_PASSWORD"] == "keep-me"
    assert values["JWT_SECRET"] == "also-keep"
    assert values["DOMAIN"] == "old.example.com"
    assert values["ADMIN_EMAIL"] == "ops@example.com"


def test_empty_values_are_regenerated() -> None:
    """Blank critical values count as missing."""
    values = generate_configuration({"REDIS_PASSWORD": "  "}, critical_keys=["REDIS_PASSWORD"])

    assert values["REDIS_PASSWORD"].strip()
    assert len(values["REDIS_PASSWORD"]) == 32


def test_unknown_critical_key_gets_a_generic_secret() -> None:
    """Operator-defined critical keys are generated too."""
    values = generate_configuration({}, critical_keys=["CUSTOM_TOKEN"])

    assert len(values["CUSTOM_TOKEN"]) == 32
