"""
Chat-completions transport.

POSTs a request body to an OpenAI-compatible /chat/completions endpoint and
yields the raw response lines as they arrive. Knows nothing about SSE
framing; that is the decoder's job.

httpx exceptions stop here: connection trouble becomes TransportError, an
error status from the API becomes UpstreamError carrying its message.
"""

from __future__ import annotations

import json
import logging
from typing import Iterator

import httpx

from gptline.errors import InvalidRequest, TransportError, UpstreamError

logger = logging.getLogger(__name__)


def _upstream_message(status_code: int, body: str) -> str:
    """Pull error.message out of an API error body, else show the raw text."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return f"HTTP {status_code}: {body[:200]}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    if isinstance(error, str) and error:
        return error
    return f"HTTP {status_code}: {body[:200]}"


class ChatTransport:
    """
    Streaming HTTP client for the chat-completions endpoint.

    Only the connect phase is time-limited; once the server starts answering
    a long generation may take as long as it takes.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        connect_timeout: float = 10,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = httpx.Timeout(None, connect=float(connect_timeout))
        self._client = client
        self.calls = 0

    def _headers(self) -> dict:
        if not self.api_key:
            raise InvalidRequest("No API key configured; set OPENAI_API_KEY")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _client_or_new(self) -> tuple[httpx.Client, bool]:
        if self._client is not None:
            return self._client, False
        return httpx.Client(timeout=self.timeout), True

    def stream_lines(self, body: dict) -> Iterator[str]:
        """Send body and yield response lines until the server closes the stream."""
        headers = self._headers()
        client, owned = self._client_or_new()
        self.calls += 1
        logger.debug("POST %s model=%s messages=%d", self.url, body.get("model"), len(body.get("messages", [])))
        try:
            with client.stream("POST", self.url, json=body, headers=headers) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    message = _upstream_message(resp.status_code, resp.text)
                    logger.warning("API returned HTTP %d: %s", resp.status_code, message)
                    raise UpstreamError(message)
                for line in resp.iter_lines():
                    yield line
        except httpx.TimeoutException as e:
            logger.warning("Connection to %s timed out: %s", self.url, e)
            raise TransportError(f"Timed out talking to {self.url}: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("Transport to %s failed: %s", self.url, e)
            raise TransportError(f"Cannot reach {self.url}: {e}") from e
        finally:
            if owned:
                client.close()

    def check(self) -> tuple[bool, str]:
        """Cheap reachability probe for --check. Never raises."""
        if not self.api_key:
            return False, "OPENAI_API_KEY is not set"
        client, owned = self._client_or_new()
        try:
            resp = client.get(self.url.rsplit("/chat/completions", 1)[0] + "/models",
                              headers={"Authorization": f"Bearer {self.api_key}"})
            if resp.status_code == 200:
                return True, f"{self.url} reachable"
            return False, _upstream_message(resp.status_code, resp.text)
        except httpx.HTTPError as e:
            return False, f"Cannot reach {self.url}: {e}"
        finally:
            if owned:
                client.close()
