import pytest
from omegaconf import OmegaConf

from duoforge.config import CacheConfig, EngineConfig

ENV_KEYS = [
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "GEMINI_MODEL",
    "XAI_API_KEY",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "AI_BASE_TOKENS",
    "AI_MAX_TOKENS",
    "AI_RETRY_COUNT",
    "DEBUG_MAX_PRIMARY_ATTEMPTS",
    "HISTORY_CAP",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_engine_defaults():
    config = EngineConfig()

    assert config.gemini.api_key is None
    assert config.openai.model_name == "grok-code-fast-1"
    assert config.openai.base_url == "https://api.x.ai/v1"
    assert (config.base_tokens, config.max_tokens) == (16384, 32768)
    assert config.retry_count == 2
    assert config.debug_max_primary_attempts == 2
    assert config.history_cap == 12


def test_engine_reads_environment(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "g-key")
    monkeypatch.setenv("XAI_API_KEY", "  ")
    monkeypatch.setenv("OPENAI_API_KEY", "o-key")
    monkeypatch.setenv("AI_RETRY_COUNT", "4")
    monkeypatch.setenv("HISTORY_CAP", "20")

    config = EngineConfig()

    assert config.gemini.api_key == "g-key"
    # blank values are skipped in favour of the next candidate
    assert config.openai.api_key == "o-key"
    assert config.retry_count == 4
    assert config.history_cap == 20


def test_update_from_hydra_config():
    config = EngineConfig()
    cfg = OmegaConf.create(
        {
            "model": {
                "gemini": {"model_name": "gemini-2.5-flash", "temperature": 0.2},
                "openai": {"base_url": "https://example.test/v1", "output_price_per_m": 3},
            },
            "engine": {"retry_count": 3, "retry_delay_s": 0.5, "history_cap": 8},
        }
    )

    config.update_from_config(cfg)

    assert config.gemini.model_name == "gemini-2.5-flash"
    assert config.gemini.temperature == 0.2
    assert config.openai.base_url == "https://example.test/v1"
    assert config.openai.output_price_per_m == 3.0
    assert config.retry_count == 3
    assert config.retry_delay_s == 0.5
    assert config.history_cap == 8


def test_update_from_plain_mapping_and_none():
    config = EngineConfig()
    config.update_from_config(None)
    config.update_from_config({"engine": {"max_tokens": 40000}})

    assert config.max_tokens == 40000


@pytest.mark.parametrize(
    "engine",
    [
        {"retry_count": 0},
        {"base_tokens": 50000},
        {"history_cap": 1},
    ],
)
def test_update_rejects_invalid_engine_values(engine):
    with pytest.raises(ValueError):
        EngineConfig().update_from_config({"engine": engine})


def test_cache_config_defaults():
    config = CacheConfig.from_omegaconf(None)

    assert config.as_dict() == {
        "response_ttl_s": 3600.0,
        "response_max_size": 500,
        "fingerprint_threshold": 4000,
        "pattern_ttl_s": 14400.0,
        "pattern_max_size": 200,
    }


def test_cache_config_from_dictconfig_casts_values():
    config = CacheConfig.from_omegaconf(OmegaConf.create({"response_ttl_s": 60, "response_max_size": 10.0}))

    assert config.response_ttl_s == 60.0
    assert isinstance(config.response_max_size, int) and config.response_max_size == 10


def test_cache_config_rejects_unknown_keys():
    with pytest.raises(KeyError):
        CacheConfig.from_omegaconf({"ttl": 5})
    with pytest.raises(KeyError):
        CacheConfig().apply_overrides(size=3)


@pytest.mark.parametrize(
    "overrides",
    [
        {"response_ttl_s": 0},
        {"response_max_size": 0},
        {"response_max_size": 2.5},
        {"pattern_max_size": True},
        {"pattern_ttl_s": None},
        {"fingerprint_threshold": "big"},
    ],
)
def test_cache_config_rejects_invalid_values(overrides):
    with pytest.raises(ValueError):
        CacheConfig(**overrides)


def test_cache_config_apply_overrides_is_validated():
    config = CacheConfig()
    config.apply_overrides(pattern_max_size=50)
    assert config.pattern_max_size == 50

    with pytest.raises(ValueError):
        config.apply_overrides(pattern_max_size=-1)
    assert config.pattern_max_size == 50
    config.validate()
