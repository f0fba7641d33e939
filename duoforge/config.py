import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from omegaconf import DictConfig, OmegaConf

logger = logging.getLogger(__name__)


def _env_first(*keys: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first environment variable among ``keys`` that is set and not blank."""
    for key in keys:
        value = os.getenv(key)
        if value and value.strip():
            return value.strip()
    return default


@dataclass
class GeminiSettings:
    api_key: Optional[str] = None
    model_name: str = "gemini-2.5-pro"
    temperature: float = 0.7
    input_price_per_m: float = 1.25
    output_price_per_m: float = 10.0


@dataclass
class OpenAISettings:
    api_key: Optional[str] = None
    model_name: str = "grok-code-fast-1"
    base_url: Optional[str] = "https://api.x.ai/v1"
    temperature: float = 0.9
    input_price_per_m: float = 0.2
    output_price_per_m: float = 1.5


class EngineConfig:
    """Backend credentials and generation knobs, from the environment with Hydra overrides."""

    def __init__(self) -> None:
        self.gemini = GeminiSettings(
            api_key=_env_first("GOOGLE_API_KEY", "GEMINI_API_KEY"),
            model_name=os.getenv("GEMINI_MODEL", "gemini-2.5-pro"),
            temperature=float(os.getenv("GEMINI_TEMPERATURE", "0.7")),
        )
        self.openai = OpenAISettings(
            api_key=_env_first("XAI_API_KEY", "OPENAI_API_KEY"),
            model_name=os.getenv("OPENAI_MODEL", "grok-code-fast-1"),
            base_url=os.getenv("OPENAI_BASE_URL", "https://api.x.ai/v1") or None,
            temperature=float(os.getenv("OPENAI_TEMPERATURE", "0.9")),
        )

        self.base_tokens = int(os.getenv("AI_BASE_TOKENS", "16384"))
        self.max_tokens = int(os.getenv("AI_MAX_TOKENS", "32768"))
        self.retry_count = int(os.getenv("AI_RETRY_COUNT", "2"))
        self.retry_delay_s = float(os.getenv("AI_RETRY_DELAY_S", "1.0"))
        self.request_timeout_s = float(os.getenv("AI_REQUEST_TIMEOUT_S", "180"))
        self.continuation_max_tokens = int(os.getenv("AI_CONTINUATION_TOKENS", "8192"))
        self.debug_max_primary_attempts = int(os.getenv("DEBUG_MAX_PRIMARY_ATTEMPTS", "2"))
        self.history_cap = int(os.getenv("HISTORY_CAP", "12"))

    def _get_attr(self, cfg: Any, key: str, default: Any = None) -> Any:
        if cfg is None:
            return default
        if isinstance(cfg, Mapping):
            return cfg.get(key, default)
        return getattr(cfg, key, default)

    def update_from_config(self, cfg: Any) -> None:
        """Apply the ``model`` and ``engine`` sections of a Hydra config (or plain mapping)."""
        if cfg is None:
            return

        for section, settings in (("gemini", self.gemini), ("openai", self.openai)):
            section_cfg = self._get_attr(self._get_attr(cfg, "model"), section)
            if section_cfg is None:
                continue
            for field_name in ("model_name", "base_url", "api_key"):
                value = self._get_attr(section_cfg, field_name)
                if value:
                    setattr(settings, field_name, str(value))
            for field_name in ("temperature", "input_price_per_m", "output_price_per_m"):
                value = self._get_attr(section_cfg, field_name)
                if value is not None:
                    setattr(settings, field_name, float(value))

        engine_cfg = self._get_attr(cfg, "engine")
        for attr_name, cast in [
            ("base_tokens", int),
            ("max_tokens", int),
            ("retry_count", int),
            ("retry_delay_s", float),
            ("request_timeout_s", float),
            ("continuation_max_tokens", int),
            ("debug_max_primary_attempts", int),
            ("history_cap", int),
        ]:
            value = self._get_attr(engine_cfg, attr_name)
            if value is not None:
                setattr(self, attr_name, cast(value))

        if self.retry_count < 1:
            raise ValueError("engine.retry_count must be at least 1.")
        if self.max_tokens < self.base_tokens:
            raise ValueError("engine.max_tokens must not be smaller than engine.base_tokens.")
        if self.history_cap < 2:
            raise ValueError("engine.history_cap must be at least 2.")


class CacheConfig:
    """Validated cache sizing compatible with Hydra."""

    FIELD_META: Dict[str, Dict[str, Any]] = {
        "response_ttl_s": {"type": "float", "min_exclusive": 0.0, "default": 3600.0},
        "response_max_size": {"type": "int", "min": 1, "default": 500},
        "fingerprint_threshold": {"type": "int", "min": 2, "default": 4000},
        "pattern_ttl_s": {"type": "float", "min_exclusive": 0.0, "default": 4 * 3600.0},
        "pattern_max_size": {"type": "int", "min": 1, "default": 200},
    }

    TYPE_LABELS = {
        "int": "an integer",
        "float": "a float",
    }

    def __init__(self, **kwargs: Any):
        normalized = self._normalized_values(kwargs)
        for key, value in normalized.items():
            setattr(self, key, value)

    @classmethod
    def from_omegaconf(cls, config: Union[DictConfig, Mapping[str, Any], None]) -> "CacheConfig":
        """Create an instance from a DictConfig, a standard mapping, or ``None`` for defaults."""
        if config is None:
            return cls()
        if isinstance(config, DictConfig):
            config = OmegaConf.to_container(config, resolve=True)
        if not isinstance(config, Mapping):
            raise TypeError("Cache configuration must be a mapping or DictConfig-compatible object.")
        unknown = set(config) - set(cls.FIELD_META)
        if unknown:
            raise KeyError("Unknown cache configuration parameters: " + ", ".join(sorted(unknown)))
        return cls(**config)

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.FIELD_META}

    def validate(self) -> None:
        self._normalized_values(self.as_dict())

    def apply_overrides(self, **overrides: Any) -> None:
        """Apply validated overrides on top of the current instance."""
        unknown = set(overrides) - set(self.FIELD_META)
        if unknown:
            raise KeyError("Unknown cache configuration parameters: " + ", ".join(sorted(unknown)))
        merged = self.as_dict()
        merged.update(overrides)
        for key, value in self._normalized_values(merged).items():
            setattr(self, key, value)

    @classmethod
    def _normalized_values(cls, overrides: Mapping[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        errors: List[str] = []

        for name, meta in cls.FIELD_META.items():
            raw_value = overrides.get(name, meta["default"])
            try:
                value = cls._cast_value(name, raw_value, meta)
                cls._validate_constraints(name, value, meta)
            except (TypeError, ValueError) as exc:
                errors.append(str(exc))
                continue
            data[name] = value

        if errors:
            raise ValueError("Invalid cache configuration: " + "; ".join(errors))
        return data

    @classmethod
    def _cast_value(cls, name: str, value: Any, meta: Dict[str, Any]) -> Any:
        if value is None:
            raise TypeError(f"Parameter '{name}' cannot be null.")
        type_name = meta["type"]
        if isinstance(value, bool):
            raise TypeError(f"Parameter '{name}' must be {cls.TYPE_LABELS[type_name]}.")
        try:
            if type_name == "int":
                if isinstance(value, float) and not value.is_integer():
                    raise ValueError
                return int(value)
            return float(value)
        except (TypeError, ValueError):
            raise TypeError(f"Parameter '{name}' must be {cls.TYPE_LABELS[type_name]}.") from None

    @staticmethod
    def _validate_constraints(name: str, value: Any, meta: Dict[str, Any]) -> None:
        if "min" in meta and value < meta["min"]:
            raise ValueError(f"Parameter '{name}' must be >= {meta['min']}.")
        if "min_exclusive" in meta and value <= meta["min_exclusive"]:
            raise ValueError(f"Parameter '{name}' must be > {meta['min_exclusive']}.")
