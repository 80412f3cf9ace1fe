"""Security settings for the DriftGuard API, read from DRIFTGUARD_* env vars.

The API lifespan and ``driftguard serve`` both refuse to start when
``startup_problems()`` reports anything.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

ENV_DEV_MODE = "DRIFTGUARD_DEV_MODE"
ENV_API_TOKEN = "DRIFTGUARD_API_TOKEN"
ENV_CORS_ALLOW_ORIGINS = "DRIFTGUARD_CORS_ALLOW_ORIGINS"

# Chat hosts usually run the API next to themselves on one of these
DEFAULT_DEV_CORS_ALLOW_ORIGINS: tuple[str, ...] = (
    "http://localhost",
    "http://127.0.0.1",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
    "http://localhost:8080",
    "http://127.0.0.1:8080",
)

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def env_flag(name: str, default: bool = False, environ: Mapping[str, str] | None = None) -> bool:
    """True/False from an env var; unset or blank gives `default`."""
    env = os.environ if environ is None else environ
    raw = env.get(name, "").strip().lower()
    return default if not raw else raw in _TRUTHY


def parse_cors_allowlist(raw: str, fallback: tuple[str, ...] = DEFAULT_DEV_CORS_ALLOW_ORIGINS) -> list[str]:
    """Comma-separated origins; an empty list falls back to the local dev origins."""
    origins = [part.strip() for part in raw.split(",") if part.strip()]
    return origins or list(fallback)


@dataclass(frozen=True)
class SecuritySettings:
    """Token auth and CORS allowlist of the HTTP API."""

    dev_mode: bool
    api_token: str
    cors_allow_origins: list[str] = field(default_factory=lambda: list(DEFAULT_DEV_CORS_ALLOW_ORIGINS))

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_token)

    def startup_problems(self) -> list[str]:
        """Reasons the API must not start with these settings (production mode only)."""
        if self.dev_mode:
            return []
        problems = []
        if "*" in self.cors_allow_origins:
            problems.append(
                f"Unsafe CORS config: '*' is only allowed in dev mode. Set {ENV_CORS_ALLOW_ORIGINS} to explicit origins."
            )
        if not self.api_token:
            problems.append(f"{ENV_API_TOKEN} is required when {ENV_DEV_MODE}=0.")
        return problems


def load_security_settings(environ: Mapping[str, str] | None = None) -> SecuritySettings:
    env = os.environ if environ is None else environ
    return SecuritySettings(
        dev_mode=env_flag(ENV_DEV_MODE, default=True, environ=env),
        api_token=env.get(ENV_API_TOKEN, "").strip(),
        cors_allow_origins=parse_cors_allowlist(env.get(ENV_CORS_ALLOW_ORIGINS, "")),
    )
