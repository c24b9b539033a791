"""
Local model backend on an OpenAI-compatible server (Lemonade style).

capabilities() reports whether the configured model is downloaded
("readily"), can be pulled with download() ("after-download") or the
server is not reachable ("unavailable").
"""

import logging

import openai
import requests
from openai import OpenAI

from taskscope.errors import PromptFailure, SessionCreationFailure, SessionInvalid
from taskscope.session import AFTER_DOWNLOAD, READILY, ProgressCallback, SessionConfig

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000/api/v1"
DEFAULT_MODEL_NAME = "Qwen3-4B-Instruct-2507-GGUF"
UNAVAILABLE = "unavailable"


class LocalChatSession:
    """A conversation with a local model, carrying its system prompt and sampling options."""

    def __init__(self, client: OpenAI, model_name: str, config: SessionConfig) -> None:
        self._client = client
        self._model_name = model_name
        self._config = config
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def prompt(self, text: str) -> str:
        if self._destroyed:
            raise SessionInvalid("Session has been destroyed")
        try:
            response = self._client.chat.completions.create(
                model=self._model_name,
                messages=[
                    {"role": "system", "content": self._config.system_prompt},
                    {"role": "user", "content": text},
                ],
                temperature=self._config.temperature,
                max_tokens=self._config.max_output_tokens,
                extra_body={"top_k": self._config.top_k},
                stream=False,
                timeout=self._config.timeout_seconds,
            )
        except openai.APITimeoutError as e:
            raise PromptFailure(f"Prompt timed out: {e}") from e
        except (openai.APIConnectionError, openai.NotFoundError) as e:
            # Server went away or unloaded the model
            raise SessionInvalid(f"AI session expired: {e}") from e
        except openai.APIError as e:
            raise PromptFailure(str(e)) from e

        if not response.choices:
            raise PromptFailure("Model returned no choices")
        return response.choices[0].message.content or ""

    def destroy(self) -> None:
        self._destroyed = True


class LocalModelServer:
    """Backend that hands out LocalChatSession objects for one model."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model_name: str = DEFAULT_MODEL_NAME,
        api_key: str = "lemonade",
        probe_timeout: float = 10.0,
        pull_timeout: float = 600.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self._api_key = api_key
        self._probe_timeout = probe_timeout
        self._pull_timeout = pull_timeout

    def capabilities(self) -> dict[str, str]:
        try:
            response = requests.get(f"{self.base_url}/models", timeout=self._probe_timeout)
            response.raise_for_status()
            models = response.json().get("data", [])
        except requests.RequestException as e:
            logger.info("Cannot reach local model server at %s: %s", self.base_url, e)
            return {"available": UNAVAILABLE}
        except ValueError:
            logger.warning("Local model server returned a non-JSON model list")
            return {"available": UNAVAILABLE}

        for model in models:
            if model.get("id") == self.model_name:
                # Servers that do not report download state only list ready models
                if model.get("downloaded", True):
                    return {"available": READILY}
                break
        return {"available": AFTER_DOWNLOAD}

    def download(self, on_progress: ProgressCallback) -> None:
        """
        Pull the model. The pull endpoint blocks until it is done.

        Bounded by pull_timeout, not by the session creation timeout.
        """
        on_progress(0)
        try:
            response = requests.post(
                f"{self.base_url}/pull",
                json={"model": self.model_name},
                timeout=self._pull_timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise SessionCreationFailure(f"Model download failed: {e}") from e
        logger.info("Model pulled: %s", self.model_name)
        on_progress(100)

    def create(self, config: SessionConfig) -> LocalChatSession:
        client = OpenAI(
            base_url=self.base_url,
            api_key=self._api_key,
            timeout=config.timeout_seconds,
        )
        return LocalChatSession(client, self.model_name, config)
