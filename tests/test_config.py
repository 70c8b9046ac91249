import pytest
from pydantic import ValidationError

from modellkoppler.config import _ENV_MAP, RelayConfig, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for env_name in (*_ENV_MAP.values(), "MODELLKOPPLER_CONFIG"):
        monkeypatch.delenv(env_name, raising=False)


def test_defaults_match_provider_endpoints(tmp_path) -> None:
    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.multimodal.base_url == "https://dashscope.aliyuncs.com/compatible-mode/v1"
    assert cfg.multimodal.model == "qwen-omni-turbo"
    assert cfg.multimodal.timeout_seconds == 300.0
    assert cfg.reasoning.base_url == "https://api.deepseek.com"
    assert cfg.reasoning.model == "deepseek-reasoner"
    assert cfg.title_model == "deepseek-chat"
    assert cfg.deep_analysis is False
    assert cfg.audio_size_warning_chars == 100_000
    assert cfg.stream_keepalive_seconds == 0.0
    assert cfg.logging is not None and cfg.logging.level == "INFO"
    assert not cfg.multimodal.has_credentials()


def test_env_credentials_and_flags_override_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("deep_analysis: false\nreasoning:\n  api_key: from-file\n", encoding="utf-8")
    monkeypatch.setenv("DASHSCOPE_API_KEY", "sk-dash")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-deep")
    monkeypatch.setenv("USE_DEEPSEEK_FOR_ANALYSIS", "true")
    monkeypatch.setenv("DEEPSEEK_CHAT_MODEL", "deepseek-chat-v2")
    monkeypatch.setenv("MODELLKOPPLER_LOG_JSON", "1")

    cfg = load_config(str(config_file))

    assert cfg.multimodal.api_key == "sk-dash"
    assert cfg.reasoning.api_key == "sk-deep"
    assert cfg.reasoning.base_url == "https://api.deepseek.com"
    assert cfg.deep_analysis is True
    assert cfg.title_model == "deepseek-chat-v2"
    assert cfg.logging.json_logs is True


def test_partial_provider_section_keeps_other_defaults(tmp_path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("multimodal:\n  model: qwen-vl-max\n", encoding="utf-8")

    cfg = load_config(str(config_file))

    assert cfg.multimodal.model == "qwen-vl-max"
    assert cfg.multimodal.base_url == "https://dashscope.aliyuncs.com/compatible-mode/v1"
    assert cfg.multimodal.timeout_seconds == 300.0


def test_config_path_can_come_from_env(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "relay.yaml"
    config_file.write_text("title_timeout_seconds: 5\n", encoding="utf-8")
    monkeypatch.setenv("MODELLKOPPLER_CONFIG", str(config_file))

    assert load_config().title_timeout_seconds == 5


def test_non_mapping_yaml_root_is_rejected(tmp_path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Config root must be object"):
        load_config(str(config_file))


def test_service_base_url_requires_port() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"service_base_url": "http://localhost"})


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"upstream_base_url": "http://127.0.0.1:10000"})


def test_provider_timeout_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"reasoning": {"timeout_seconds": 0}})


def test_provider_lookup_by_name() -> None:
    cfg = RelayConfig()

    assert cfg.provider("multimodal") is cfg.multimodal
    assert cfg.provider("reasoning") is cfg.reasoning
    with pytest.raises(ValueError):
        cfg.provider("vision")  # type: ignore[arg-type]
