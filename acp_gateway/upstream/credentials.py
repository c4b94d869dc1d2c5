from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger("uvicorn.error")

MIN_TOKEN_LENGTH = 10


class CredentialsError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Credentials:
    access_token: str
    endpoint_url: str


def parse_credentials(payload: Any, *, source: str) -> Credentials:
    if not isinstance(payload, dict):
        raise CredentialsError(f"Expected a JSON object in '{source}'.")
    access_token = payload.get("accessToken")
    endpoint_url = payload.get("endpointURL") or payload.get("tenantURL")
    missing = [
        name
        for name, value in (("accessToken", access_token), ("endpointURL", endpoint_url))
        if not isinstance(value, str) or not value.strip()
    ]
    if missing:
        raise CredentialsError(
            f"Credentials in '{source}' are missing: {', '.join(missing)}. "
            "Log in with the agent CLI to refresh the session file."
        )
    if len(access_token) < MIN_TOKEN_LENGTH:
        logger.warning(
            "credentials_token_suspicious source=%s length=%d",
            source,
            len(access_token),
        )
    return Credentials(access_token=access_token.strip(), endpoint_url=endpoint_url.strip())


class CredentialStore:
    """Lazily loaded, process-wide credentials for creating agent clients."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._cached: Credentials | None = None
        self._override = False

    @property
    def has_override(self) -> bool:
        return self._override

    def _read_file(self) -> Credentials:
        if not self.path.exists():
            raise CredentialsError(
                f"Credentials file not found at '{self.path}'. "
                "Log in with the agent CLI first."
            )
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except ValueError as exc:
            raise CredentialsError(f"Credentials file '{self.path}' is not valid JSON.") from exc
        return parse_credentials(payload, source=str(self.path))

    def check(self) -> Credentials:
        if self._cached is not None:
            return self._cached
        credentials = self._read_file()
        self._cached = credentials
        logger.info(
            "credentials_loaded source=%s endpoint_url=%s",
            self.path,
            credentials.endpoint_url,
        )
        return credentials

    async def load(self) -> Credentials:
        if self._cached is not None:
            return self._cached
        credentials = await asyncio.to_thread(self._read_file)
        # Another coroutine may have installed an override while we were reading.
        if self._cached is None:
            self._cached = credentials
        return self._cached

    def set_override(self, access_token: str, endpoint_url: str) -> Credentials:
        credentials = parse_credentials(
            {"accessToken": access_token, "endpointURL": endpoint_url},
            source="override",
        )
        self._cached = credentials
        self._override = True
        logger.info("credentials_override endpoint_url=%s", credentials.endpoint_url)
        return credentials

    def invalidate(self) -> None:
        self._cached = None
        self._override = False
