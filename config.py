import os
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class Config:
    # clipboard polling
    poll_interval_ms: int = 1000
    poll_rate_limit_ms: int = 50
    debounce_ms: int = 100
    min_change_interval_ms: int = 500
    min_content_length: int = 3
    max_content_length: int = 10000
    min_poll_interval_ms: int = 500
    max_poll_interval_ms: int = 5000
    activity_threshold_ms: int = 10000
    inactivity_threshold_ms: int = 30000
    pause_threshold_ms: int = 30000
    resume_threshold_ms: int = 5000
    change_rate_threshold: int = 5
    change_window_ms: int = 60000
    interval_change_tolerance_ms: int = 100
    read_max_retries: int = 3
    read_retry_delay_ms: int = 1000
    metrics_interval_ms: int = 10000

    # generation
    max_retries: int = 3
    retry_delay_ms: int = 1000
    ollama_timeout_ms: int = 120000
    gemini_timeout_ms: int = 60000
    key_test_timeout_ms: int = 10000
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash"
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 500

    # vault
    data_dir: str = os.path.join(os.path.expanduser("~"), ".clipassist")
    store_name: str = "secure-config"
    keyring_service: str = "clipassist"

    status_reset_ms: int = 3000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        env_map = {
            "ollama_host": "OLLAMA_HOST",
            "gemini_api_base": "GEMINI_API_BASE",
            "data_dir": "CLIPASSIST_DATA_DIR",
            "log_level": "CLIPASSIST_LOG_LEVEL",
        }
        overrides = {}
        for name, var in env_map.items():
            value = os.getenv(var)
            if value:
                overrides[name] = value
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in overrides.items() if k in known})
