"""Configuration loading and validation for the summary engine."""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from storyrecap.constants import DEFAULT_CATEGORIES, DEFAULT_CATEGORY_ORDER

logger = logging.getLogger(__name__)


class SummaryMode(str, Enum):
    """How messages are grouped into summary entries."""

    INDIVIDUAL = "individual"  # one entry per message
    BATCH = "batch"  # one entry per batch_group_size messages


class InjectionPosition(str, Enum):
    """Where the Prompt Sink places the injection."""

    BEFORE_MAIN = "before-main"
    AFTER_MAIN = "after-main"
    IN_CHAT = "in-chat"


class ApiSource(str, Enum):
    """Which LLM backend family serves summary requests."""

    HOST = "host"  # host-native or profile-routed
    CUSTOM = "custom"  # direct HTTP


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class CategoryConfig(_CamelModel):
    """A single extraction heading the LLM is asked to fill."""

    key: str = ""
    label: str
    icon: str = ""
    enabled: bool = True
    prompt: str = ""


class CustomApiConfig(_CamelModel):
    """Connection details for the direct HTTP backend."""

    url: str = ""
    key: Optional[str] = None
    key_env: Optional[str] = None
    model: str = ""
    max_tokens: int = Field(default=4000, ge=1)
    timeout: float = Field(default=60, gt=0)

    @model_validator(mode="after")
    def resolve_api_key(self) -> "CustomApiConfig":
        if not self.key and self.key_env:
            self.key = os.environ.get(self.key_env)
            if self.key is None:
                logger.warning(
                    "Environment variable %s is not set for the custom API",
                    self.key_env,
                )
        return self


class PromptTemplates(_CamelModel):
    """User overrides for the prompt templates; None means built-in default."""

    individual: Optional[str] = None
    batch: Optional[str] = None
    character_extract: Optional[str] = None
    event_extract: Optional[str] = None
    item_extract: Optional[str] = None
    compress: Optional[str] = None


def _default_categories() -> dict[str, CategoryConfig]:
    return {
        key: CategoryConfig(key=key, **values)
        for key, values in DEFAULT_CATEGORIES.items()
    }


# Flat option names written by older settings files
_FLAT_API_KEYS = {
    "customApiUrl": "url",
    "customApiKey": "key",
    "customApiModel": "model",
    "customApiMaxTokens": "maxTokens",
    "customApiTimeout": "timeout",
}
_FLAT_PROMPT_KEYS = {
    "customPromptTemplate": "individual",
    "customBatchPromptTemplate": "batch",
    "customCharacterPromptTemplate": "characterExtract",
    "customEventPromptTemplate": "eventExtract",
    "customItemPromptTemplate": "itemExtract",
}


class SummarizerSettings(_CamelModel):
    """Root configuration model; unknown keys survive a dump/load cycle."""

    enabled: bool = True
    automatic_mode: bool = False

    summary_interval: int = Field(default=10, ge=1)
    batch_size: int = Field(default=10, ge=1)
    preserve_recent_messages: int = Field(default=5, ge=0)

    summary_mode: SummaryMode = SummaryMode.BATCH
    batch_group_size: int = Field(default=5, ge=1)
    summary_language: str = "en"

    auto_hide_enabled: bool = True
    include_world_info: bool = False

    character_tracking_enabled: bool = False
    event_tracking_enabled: bool = False
    item_tracking_enabled: bool = False

    injection_position: InjectionPosition = InjectionPosition.AFTER_MAIN
    injection_depth: int = Field(default=0, ge=0)
    token_budget: int = Field(default=20000, ge=0)

    summary_context_count: int = Field(default=5, ge=-1)
    """Prior summaries shown to the LLM; -1 means all."""
    previous_summaries_token_limit: int = Field(default=6000, ge=0)

    categories: dict[str, CategoryConfig] = Field(default_factory=_default_categories)
    category_order: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CATEGORY_ORDER)
    )

    api_source: ApiSource = ApiSource.HOST
    use_raw_prompt: bool = True
    connection_profile: str = ""
    custom_api: CustomApiConfig = Field(default_factory=CustomApiConfig)
    prompts: PromptTemplates = Field(default_factory=PromptTemplates)

    debounce_seconds: float = Field(default=1.0, ge=0)
    save_debounce_seconds: float = Field(default=0.5, ge=0)
    tokenizer_model: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def fold_flat_options(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        api = dict(data.get("customApi") or data.get("custom_api") or {})
        for flat, nested in _FLAT_API_KEYS.items():
            if flat in data:
                api.setdefault(nested, data.pop(flat))
        if api:
            data.pop("custom_api", None)
            data["customApi"] = api
        prompts = dict(data.get("prompts") or {})
        for flat, nested in _FLAT_PROMPT_KEYS.items():
            if flat in data:
                prompts.setdefault(nested, data.pop(flat))
        if prompts:
            data["prompts"] = prompts
        if "stConnectionProfile" in data:
            data.setdefault("connectionProfile", data.pop("stConnectionProfile"))
        source = data.get("apiSource", data.get("api_source"))
        if source == "sillytavern":
            data.pop("api_source", None)
            data["apiSource"] = ApiSource.HOST.value
        return data

    @field_validator("summary_language")
    @classmethod
    def normalize_language(cls, v: str) -> str:
        return (v or "en").strip().lower()

    @model_validator(mode="after")
    def fill_category_keys(self) -> "SummarizerSettings":
        for key, category in self.categories.items():
            if not category.key:
                category.key = key
        return self

    def ordered_categories(self) -> list[CategoryConfig]:
        """Enabled categories in category_order, then any unordered extras."""
        ordered: list[CategoryConfig] = []
        seen: set[str] = set()
        for key in self.category_order:
            category = self.categories.get(key)
            if category is not None and key not in seen:
                seen.add(key)
                if category.enabled:
                    ordered.append(category)
        for key, category in self.categories.items():
            if key not in seen and category.enabled:
                ordered.append(category)
        return ordered

    def to_blob(self) -> dict[str, Any]:
        """Serialize with the camelCase option names, extras included."""
        return self.model_dump(mode="json", by_alias=True)


def load_settings(path: Path) -> SummarizerSettings:
    """Load and validate settings from a YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return SummarizerSettings(**raw)


def save_settings(settings: SummarizerSettings, path: Path) -> None:
    """Write settings to a YAML file using the camelCase option names."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(settings.to_blob(), f, allow_unicode=True, sort_keys=False)
