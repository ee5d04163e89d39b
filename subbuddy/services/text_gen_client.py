"""Text-generation client used by the report generator.

WHAT:
    TextGenClient is the narrow interface (one chat completion -> text);
    OpenAITextGenClient implements it with the OpenAI SDK.

WHY:
    The generator/critic loop only needs "messages in, text out". Keeping the
    SDK behind this seam lets tests script generator and critic replies.

ERRORS:
    Every failure maps onto subbuddy.exceptions.TextGenError. The SDK's own
    retries are disabled (max_retries=0): a report is all-or-nothing and the
    user retries it manually.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from subbuddy.deps import get_settings
from subbuddy.exceptions import (
    EmptyResponseError,
    NoAPIKeyError,
    TextGenDecodeError,
    TextGenNetworkError,
    TextGenRateLimitedError,
    TextGenServerError,
    TextGenUnauthorizedError,
)
from subbuddy.telemetry import LogFn, app_log

CATEGORY = "OpenAI"

Message = Dict[str, str]


class TextGenClient(ABC):
    @abstractmethod
    async def complete(
        self,
        api_key: str,
        messages: List[Message],
        temperature: float,
        max_tokens: int,
    ) -> str:
        """Return the first choice's message content; raise TextGenError on failure."""


class OpenAITextGenClient(TextGenClient):
    """Chat-completions client with a fixed model.

    Args:
        model: Model name (default: settings.OPENAI_MODEL)
        base_url: API root including /v1 (default: settings.OPENAI_BASE_URL)
        timeout: Per-call timeout in seconds
        http_client: Shared httpx client (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        log: LogFn = app_log,
    ):
        if model is None or base_url is None or timeout is None:
            settings = get_settings()
            model = model or settings.OPENAI_MODEL
            base_url = base_url or settings.OPENAI_BASE_URL
            timeout = timeout if timeout is not None else settings.TEXT_GEN_TIMEOUT_SECONDS
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._http_client = http_client
        self._log = log

    def _build_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            http_client=self._http_client,
        )

    async def complete(
        self,
        api_key: str,
        messages: List[Message],
        temperature: float,
        max_tokens: int,
    ) -> str:
        if not api_key or not api_key.strip():
            raise NoAPIKeyError()

        client = self._build_client(api_key.strip())
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.AuthenticationError as e:
            raise TextGenUnauthorizedError() from e
        except openai.RateLimitError as e:
            raise TextGenRateLimitedError() from e
        except openai.APIStatusError as e:
            self._log(f"API error {e.status_code}", "error", CATEGORY)
            raise TextGenServerError(e.status_code, e.response.text) from e
        except openai.APIConnectionError as e:
            self._log(f"Network error: {e}", "error", CATEGORY)
            raise TextGenNetworkError(e) from e
        except openai.APIResponseValidationError as e:
            self._log(f"Decoding failed: {e}", "error", CATEGORY)
            raise TextGenDecodeError(e) from e
        finally:
            # Only close what we own; a shared http_client outlives this call
            if self._http_client is None:
                await client.close()

        try:
            choices = response.choices
        except AttributeError as e:
            # Non-JSON 200 bodies come back from the SDK as plain strings
            raise TextGenDecodeError(e) from e
        if not choices:
            raise EmptyResponseError()
        content = choices[0].message.content
        if not content:
            raise EmptyResponseError()
        return content
