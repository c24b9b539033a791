"""Configuration loaded from environment variables.

All settings have defaults taken from the observed system. Override via
TASKSCOPE_* env vars.
"""

import logging
import os
from dataclasses import dataclass, field

from taskscope import local_backend, remote
from taskscope.session import DEFAULT_SYSTEM_PROMPT, SessionConfig

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class MonitorConfig:
    """taskscope configuration."""

    # Periodic tasks (seconds)
    capture_interval: float = 2.0
    compaction_interval: float = 120.0
    session_refresh_interval: float = 900.0

    # Rolling log
    max_rows: int = 12
    store_path: str | None = None

    # Session creation
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 1.0
    top_k: int = 3
    max_output_tokens: int = 10
    session_timeout_seconds: int = 30

    # Prompting
    retry_truncate_chars: int = 50
    prompt_top_n: int = 10
    prompt_cpu_threshold: float = 0.0

    # Backends
    local_base_url: str = local_backend.DEFAULT_BASE_URL
    local_model: str = local_backend.DEFAULT_MODEL_NAME
    remote_base_url: str = remote.DEFAULT_BASE_URL
    remote_model: str = remote.DEFAULT_MODEL
    remote_models: list[str] = field(default_factory=lambda: [remote.DEFAULT_MODEL])
    credential_env: str = "GEMINI_API_KEY"
    use_remote: bool = False

    log_level: str = "WARNING"
    log_file: str | None = None

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            system_prompt=self.system_prompt,
            temperature=self.temperature,
            top_k=self.top_k,
            max_output_tokens=self.max_output_tokens,
            timeout_seconds=self.session_timeout_seconds,
        )

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from TASKSCOPE_* environment variables."""
        overrides = {k: v for k, v in os.environ.items() if k.startswith("TASKSCOPE_")}
        if overrides:
            logger.info(
                "MonitorConfig.from_env: TASKSCOPE_* env overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug("MonitorConfig.from_env: no TASKSCOPE_* env vars set, using defaults")

        remote_model = os.getenv("TASKSCOPE_REMOTE_MODEL", cls.remote_model)
        remote_models = [
            m.strip()
            for m in os.getenv("TASKSCOPE_REMOTE_MODELS", remote_model).split(",")
            if m.strip()
        ]
        if remote_model not in remote_models:
            remote_models.insert(0, remote_model)

        return cls(
            capture_interval=float(os.getenv(
                "TASKSCOPE_CAPTURE_INTERVAL", str(cls.capture_interval)
            )),
            compaction_interval=float(os.getenv(
                "TASKSCOPE_COMPACTION_INTERVAL", str(cls.compaction_interval)
            )),
            session_refresh_interval=float(os.getenv(
                "TASKSCOPE_REFRESH_INTERVAL", str(cls.session_refresh_interval)
            )),
            max_rows=int(os.getenv("TASKSCOPE_MAX_ROWS", str(cls.max_rows))),
            store_path=os.getenv("TASKSCOPE_STORE_PATH") or None,
            system_prompt=os.getenv("TASKSCOPE_SYSTEM_PROMPT", cls.system_prompt),
            temperature=float(os.getenv("TASKSCOPE_TEMPERATURE", str(cls.temperature))),
            top_k=int(os.getenv("TASKSCOPE_TOP_K", str(cls.top_k))),
            max_output_tokens=int(os.getenv(
                "TASKSCOPE_MAX_OUTPUT_TOKENS", str(cls.max_output_tokens)
            )),
            session_timeout_seconds=int(os.getenv(
                "TASKSCOPE_SESSION_TIMEOUT", str(cls.session_timeout_seconds)
            )),
            retry_truncate_chars=int(os.getenv(
                "TASKSCOPE_RETRY_TRUNCATE", str(cls.retry_truncate_chars)
            )),
            prompt_top_n=int(os.getenv("TASKSCOPE_PROMPT_TOP_N", str(cls.prompt_top_n))),
            prompt_cpu_threshold=float(os.getenv(
                "TASKSCOPE_PROMPT_CPU_THRESHOLD", str(cls.prompt_cpu_threshold)
            )),
            local_base_url=os.getenv("TASKSCOPE_LOCAL_URL", cls.local_base_url),
            local_model=os.getenv("TASKSCOPE_LOCAL_MODEL", cls.local_model),
            remote_base_url=os.getenv("TASKSCOPE_REMOTE_URL", cls.remote_base_url),
            remote_model=remote_model,
            remote_models=remote_models,
            credential_env=os.getenv("TASKSCOPE_CREDENTIAL_ENV", cls.credential_env),
            use_remote=os.getenv("TASKSCOPE_USE_REMOTE", "").lower() in {"1", "true", "yes"},
            log_level=os.getenv("TASKSCOPE_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("TASKSCOPE_LOG_FILE") or None,
        )


def configure_logging(level: str = "WARNING", log_file: str | None = None) -> None:
    """
    Set up the root logger.

    Logs go to a file when one is given; the terminal belongs to the UI.
    """
    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.WARNING))
