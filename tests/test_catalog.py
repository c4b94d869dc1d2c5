from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from acp_gateway.config import ModelCatalog, load_model_catalog


def _write_catalog(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    return path


def test_packaged_catalog_loads() -> None:
    catalog = load_model_catalog()
    assert catalog.default_model == "claude-opus-4-6"
    assert catalog.default_model in catalog.public_ids()
    assert catalog.models["claude-opus-4-6"].upstream_id == "opus4.6"
    upstream_ids = [config.upstream_id for config in catalog.models.values()]
    assert len(upstream_ids) == len(set(upstream_ids))
    for config in catalog.models.values():
        assert config.max_output_tokens <= config.context_tokens


def test_resolve_reports_default_fallback() -> None:
    catalog = load_model_catalog()
    config, used_default = catalog.resolve("claude-sonnet-4-5")
    assert (config.upstream_id, used_default) == ("sonnet4.5", False)
    config, used_default = catalog.resolve("unknown-model")
    assert (config.upstream_id, used_default) == ("opus4.6", True)
    assert catalog.resolve(None)[1] is True


def test_default_model_override() -> None:
    catalog = load_model_catalog(default_model="gpt-5")
    assert catalog.default_model == "gpt-5"
    with pytest.raises(ValueError, match="not defined"):
        load_model_catalog(default_model="missing-model")


def test_catalog_rejects_unknown_default(tmp_path: Path) -> None:
    path = _write_catalog(
        tmp_path / "models.yaml",
        """
default_model: nope
models:
  a:
    upstream_id: a1
    display_name: A
    context_tokens: 100
    max_output_tokens: 10
""",
    )
    with pytest.raises(ValidationError, match="default_model"):
        load_model_catalog(path)


def test_catalog_rejects_shared_upstream_id() -> None:
    with pytest.raises(ValidationError, match="shared"):
        ModelCatalog.model_validate(
            {
                "default_model": "a",
                "models": {
                    "a": {
                        "upstream_id": "same",
                        "display_name": "A",
                        "context_tokens": 100,
                        "max_output_tokens": 10,
                    },
                    "b": {
                        "upstream_id": "same",
                        "display_name": "B",
                        "context_tokens": 100,
                        "max_output_tokens": 10,
                    },
                },
            }
        )


def test_catalog_rejects_output_larger_than_context() -> None:
    with pytest.raises(ValidationError, match="exceeds"):
        ModelCatalog.model_validate(
            {
                "default_model": "a",
                "models": {
                    "a": {
                        "upstream_id": "a1",
                        "display_name": "A",
                        "context_tokens": 100,
                        "max_output_tokens": 500,
                    }
                },
            }
        )


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    path = _write_catalog(tmp_path / "models.yaml", "- just\n- a list\n")
    with pytest.raises(ValueError, match="Expected YAML object"):
        load_model_catalog(path)
