from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .client import DEFAULT_BROKER_URL
from .errors import InitializationError
from .polling import PollConfig

ENV_CLIENT_ID = "TB_CLIENT_ID"
ENV_PRIVATE_KEY = "TB_PRIVATE_KEY"
ENV_PUBLIC_KEY = "TB_PUBLIC_KEY"
ENV_BROKER_URL = "TB_BROKER_URL"
ENV_POLL_INTERVAL_MS = "TB_POLL_INTERVAL_MS"
ENV_POLL_TIMEOUT_MS = "TB_POLL_TIMEOUT_MS"


@dataclass(frozen=True)
class TrustBrokerConfig:
    client_id: str
    private_key_pem: str
    public_key_pem: Optional[str] = None
    broker_url: str = DEFAULT_BROKER_URL
    poll_interval_ms: int = PollConfig.interval_ms
    poll_timeout_ms: int = PollConfig.timeout_ms

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrustBrokerConfig":
        env = os.environ if environ is None else environ
        client_id = env.get(ENV_CLIENT_ID, "").strip()
        private_key = env.get(ENV_PRIVATE_KEY, "").strip()
        if not client_id or not private_key:
            raise InitializationError(f"missing credentials: {ENV_CLIENT_ID} and {ENV_PRIVATE_KEY} are required")
        public_key = env.get(ENV_PUBLIC_KEY, "").strip()
        return cls(
            client_id=client_id,
            private_key_pem=decode_pem(private_key, ENV_PRIVATE_KEY),
            public_key_pem=decode_pem(public_key, ENV_PUBLIC_KEY) if public_key else None,
            broker_url=env.get(ENV_BROKER_URL, "").strip() or DEFAULT_BROKER_URL,
            poll_interval_ms=_int_env(env, ENV_POLL_INTERVAL_MS, PollConfig.interval_ms),
            poll_timeout_ms=_int_env(env, ENV_POLL_TIMEOUT_MS, PollConfig.timeout_ms),
        )


def decode_pem(value: str, name: str) -> str:
    """Keys travel base64-encoded in the environment; plain PEM is accepted too."""
    if "-----BEGIN" in value:
        return value.replace("\\n", "\n")
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise InitializationError(f"{name} is neither PEM nor base64-encoded PEM") from exc
    if "-----BEGIN" not in decoded:
        raise InitializationError(f"{name} is neither PEM nor base64-encoded PEM")
    return decoded


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InitializationError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise InitializationError(f"{name} must be positive")
    return value
