from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

PACKAGED_CATALOG_PATH = Path(__file__).resolve().parent / "catalogs" / "data" / "models.yaml"


class ModelConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    upstream_id: str
    display_name: str
    context_tokens: int = Field(gt=0)
    max_output_tokens: int = Field(gt=0)

    @model_validator(mode="after")
    def _output_fits_context(self) -> ModelConfig:
        if self.max_output_tokens > self.context_tokens:
            raise ValueError(
                f"max_output_tokens ({self.max_output_tokens}) exceeds "
                f"context_tokens ({self.context_tokens}) for '{self.upstream_id}'."
            )
        return self


class ModelCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = "0.0.0"
    default_model: str
    owned_by: str = "augment-code"
    models: dict[str, ModelConfig]

    @model_validator(mode="after")
    def _validate_catalog(self) -> ModelCatalog:
        if not self.models:
            raise ValueError("Model catalog must define at least one model.")
        if self.default_model not in self.models:
            raise ValueError(
                f"default_model '{self.default_model}' is not defined in models."
            )
        seen: dict[str, str] = {}
        for model_id, config in self.models.items():
            previous = seen.get(config.upstream_id)
            if previous is not None:
                raise ValueError(
                    f"upstream_id '{config.upstream_id}' is shared by "
                    f"'{previous}' and '{model_id}'."
                )
            seen[config.upstream_id] = model_id
        return self

    def public_ids(self) -> list[str]:
        return list(self.models)

    def get(self, model_id: str) -> ModelConfig | None:
        return self.models.get(model_id)

    def resolve(self, model_id: str | None) -> tuple[ModelConfig, bool]:
        """Return the config for ``model_id`` and whether the default was used."""
        if model_id:
            config = self.models.get(model_id)
            if config is not None:
                return config, False
        return self.models[self.default_model], True

    def with_default(self, default_model: str | None) -> ModelCatalog:
        if not default_model or default_model == self.default_model:
            return self
        if default_model not in self.models:
            raise ValueError(
                f"DEFAULT_MODEL '{default_model}' is not defined in the model catalog."
            )
        return self.model_copy(update={"default_model": default_model})


def load_model_catalog(
    path: str | Path | None = None,
    *,
    default_model: str | None = None,
) -> ModelCatalog:
    resolved = Path(path) if path else PACKAGED_CATALOG_PATH
    with resolved.open("r", encoding="utf-8") as handle:
        payload: Any = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Expected YAML object in '{resolved}'.")
    catalog = ModelCatalog.model_validate(payload)
    return catalog.with_default(default_model)
