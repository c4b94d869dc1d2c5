from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import pytest

from acp_gateway.upstream.credentials import CredentialsError, CredentialStore, parse_credentials
from tests.client_test_utils import TEST_ACCESS_TOKEN, TEST_ENDPOINT_URL, write_credentials


def test_check_reads_and_caches_the_session_file(tmp_path: Path) -> None:
    path = write_credentials(tmp_path / "session.json")
    store = CredentialStore(path)

    first = store.check()
    path.unlink()
    second = store.check()

    assert first is second
    assert first.access_token == TEST_ACCESS_TOKEN
    assert first.endpoint_url == TEST_ENDPOINT_URL
    assert store.has_override is False


def test_missing_file_names_the_path(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "absent.json")
    with pytest.raises(CredentialsError, match="absent.json"):
        store.check()


def test_invalid_json_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(CredentialsError, match="not valid JSON"):
        CredentialStore(path).check()


def test_missing_fields_are_listed() -> None:
    with pytest.raises(CredentialsError) as exc_info:
        parse_credentials({"accessToken": "  "}, source="session.json")
    message = str(exc_info.value)
    assert "accessToken" in message
    assert "endpointURL" in message


def test_tenant_url_is_accepted_as_endpoint(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text(
        '{"accessToken": "%s", "tenantURL": "https://legacy.example.test"}' % TEST_ACCESS_TOKEN,
        encoding="utf-8",
    )
    assert CredentialStore(path).check().endpoint_url == "https://legacy.example.test"


def test_short_token_is_accepted_with_warning(caplog: Any) -> None:
    with caplog.at_level(logging.WARNING):
        credentials = parse_credentials(
            {"accessToken": "abc", "endpointURL": TEST_ENDPOINT_URL},
            source="session.json",
        )
    assert credentials.access_token == "abc"
    assert "credentials_token_suspicious" in caplog.text


def test_override_replaces_file_until_invalidated(tmp_path: Path) -> None:
    store = CredentialStore(write_credentials(tmp_path / "session.json"))
    store.set_override("override-token-0123456789", "https://override.example.test")

    assert store.has_override is True
    assert store.check().endpoint_url == "https://override.example.test"

    store.invalidate()
    assert store.has_override is False
    assert store.check().access_token == TEST_ACCESS_TOKEN


def test_async_load_reads_once(tmp_path: Path) -> None:
    path = write_credentials(tmp_path / "session.json")
    store = CredentialStore(path)

    async def scenario() -> None:
        first = await store.load()
        path.unlink()
        second = await store.load()
        assert first is second

    asyncio.run(scenario())
