"""Stateless client for the remote generateContent endpoint."""

import logging

import requests

from taskscope.errors import RemoteApiFailure

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1"
DEFAULT_MODEL = "gemini-1.5-flash"


class RemoteModelClient:
    """
    One POST per call, no retry.

    Raises RemoteApiFailure for transport errors, non-success statuses and
    responses without candidate text alike.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        default_model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self._timeout = timeout
        self._session = session or requests.Session()

    def generate(self, prompt: str, credential: str | None, model_id: str | None = None) -> str:
        model = model_id or self.default_model
        url = f"{self.base_url}/models/{model}:generateContent"
        body = {"contents": [{"parts": [{"text": prompt}]}]}

        try:
            response = self._session.post(
                url,
                params={"key": credential or ""},
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise RemoteApiFailure(None, str(e)) from e

        if not response.ok:
            raise RemoteApiFailure(response.status_code, _error_message(response))

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteApiFailure(response.status_code, "Response is not valid JSON") from e
        return extract_text(data, response.status_code)

    def close(self) -> None:
        self._session.close()


def _error_message(response: requests.Response) -> str:
    try:
        error = response.json().get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)
    except (ValueError, AttributeError):
        message = None
    return message or response.reason or "API request failed"


def extract_text(data: object, status: int | None = None) -> str:
    """Pull candidates[0].content.parts[0].text out of a response body."""
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        logger.warning("Malformed generateContent response: %.200r", data)
        raise RemoteApiFailure(status, "Response contained no candidate text") from None
    if not isinstance(text, str):
        raise RemoteApiFailure(status, "Response contained no candidate text")
    return text
