import json
import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidPayloadError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_BIND_HOST = "127.0.0.1"
DEFAULT_PORT = 3434
DEFAULT_MODEL_PROVIDERS = {"z-ai/glm-5": "atlas-cloud/fp8"}


def normalize_model_providers(value: Any) -> Dict[str, str]:
    """
    Trim model and provider ids, dropping any entry where either ends up empty.
    Anything that is not a mapping normalizes to an empty table.
    """
    if not isinstance(value, dict):
        return {}

    out: Dict[str, str] = {}
    for raw_model, raw_provider in value.items():
        model = str(raw_model or "").strip()
        provider = str(raw_provider or "").strip()
        if model and provider:
            out[model] = provider
    return out


class RoutingSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    openrouter_api_key: str = Field("", alias="openrouterApiKey")
    openrouter_base_url: str = Field(DEFAULT_BASE_URL, alias="openrouterBaseUrl")
    model_providers: Dict[str, str] = Field(default_factory=dict, alias="modelProviders")
    allow_fallbacks: bool = Field(False, alias="allowFallbacks")
    bind_host: str = Field(DEFAULT_BIND_HOST, alias="bindHost")
    port: int = DEFAULT_PORT

    @field_validator("openrouter_api_key", mode="before")
    @classmethod
    def _api_key(cls, v):
        return "" if v is None else str(v)

    @field_validator("openrouter_base_url", mode="before")
    @classmethod
    def _base_url(cls, v):
        return str(v or "").strip() or DEFAULT_BASE_URL

    @field_validator("model_providers", mode="before")
    @classmethod
    def _model_providers(cls, v):
        return normalize_model_providers(v)

    @field_validator("allow_fallbacks", mode="before")
    @classmethod
    def _allow_fallbacks(cls, v):
        return False if v is None else v

    @field_validator("bind_host", mode="before")
    @classmethod
    def _bind_host(cls, v):
        return str(v or "").strip() or DEFAULT_BIND_HOST

    @field_validator("port", mode="before")
    @classmethod
    def _port(cls, v):
        return v or DEFAULT_PORT

    @property
    def base_url(self) -> str:
        return self.openrouter_base_url.rstrip("/")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def default_settings() -> RoutingSettings:
    return RoutingSettings(model_providers=dict(DEFAULT_MODEL_PROVIDERS))


def migrate_legacy(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Fold the old single pinModel/pinProvider pair into modelProviders."""
    data = {k: v for k, v in raw.items() if k not in ("pinModel", "pinProvider")}
    providers = normalize_model_providers(raw.get("modelProviders"))
    pin_model = str(raw.get("pinModel") or "").strip()
    pin_provider = str(raw.get("pinProvider") or "").strip()
    if pin_model and pin_provider and pin_model not in providers:
        providers[pin_model] = pin_provider
    data["modelProviders"] = providers
    return data


class ConfigLoader:
    """
    File-backed store for RoutingSettings.

    Nothing is cached: every load_config() goes back to disk so edits made by
    hand or through the admin page apply to the next request.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get("PINPROXY_CONFIG", "config.json")

    def load_config(self) -> RoutingSettings:
        if not os.path.exists(self.config_path):
            settings = default_settings()
            self._write(settings)
            logger.info(f"Created default config at {self.config_path}")
            return settings

        with open(self.config_path, "r", encoding="utf-8") as f:
            raw_text = f.read()

        try:
            raw = json.loads(raw_text)
        except json.JSONDecodeError:
            logger.warning(f"Config file {self.config_path} is not valid JSON, using defaults")
            raw = {}
        if not isinstance(raw, dict):
            raw = {}

        data = migrate_legacy(raw)
        try:
            settings = RoutingSettings.model_validate(data)
        except ValidationError as e:
            # only the offending fields fall back to their defaults
            bad = {err["loc"][0] for err in e.errors() if err["loc"]}
            logger.warning(f"Config file {self.config_path} has invalid {sorted(bad)}, using defaults for them")
            settings = RoutingSettings.model_validate({k: v for k, v in data.items() if k not in bad})

        if settings.to_json() != raw:
            self._write(settings)
        return settings

    def save_config(self, payload: Dict[str, Any]) -> RoutingSettings:
        """
        Replace the stored settings with payload. bindHost and port keep their
        stored values unless the payload carries them. Validation happens
        before anything is written.
        """
        if not isinstance(payload, dict):
            raise InvalidPayloadError()

        current = self.load_config().to_json()
        merged = {
            "openrouterApiKey": payload.get("openrouterApiKey", ""),
            "openrouterBaseUrl": payload.get("openrouterBaseUrl", ""),
            "modelProviders": payload.get("modelProviders"),
            "allowFallbacks": payload.get("allowFallbacks", False),
            "bindHost": payload.get("bindHost", current["bindHost"]),
            "port": payload.get("port", current["port"]),
        }
        try:
            settings = RoutingSettings.model_validate(merged)
        except ValidationError as e:
            errors = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            raise InvalidPayloadError(f"Invalid config: {errors}")

        self._write(settings)
        return settings

    def _write(self, settings: RoutingSettings):
        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(settings.to_json(), f, indent=2)


def resolve_bind_address(settings: RoutingSettings) -> tuple:
    """HOST/PORT from the environment win over the stored bind address."""
    host = os.environ.get("HOST") or settings.bind_host
    port = int(os.environ.get("PORT") or settings.port)
    return host, port
