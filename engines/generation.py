"""Generation backend adapter: (system, user, params) -> raw text."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Dict, Optional

import httpx

import config
from engines.validation import GenerationError

logger = logging.getLogger(__name__)
_LLM_LOGGER = logging.getLogger("llm.calls")


@dataclass(frozen=True)
class GenerationParams:
    temperature: float = config.LLM_TEMPERATURE
    max_tokens: Optional[int] = config.LLM_MAX_TOKENS


class GenerationClient:
    """Stateless wrapper around an OpenAI-compatible chat completions endpoint.

    No retries happen here; a failed call raises :class:`GenerationError`.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        request_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url or config.LLM_API_URL
        self.api_key = api_key if api_key is not None else config.LLM_API_KEY
        self.model = model or config.MODEL_ID
        self.request_timeout = request_timeout or config.LLM_TIMEOUT
        self._transport = transport

    def _payload(self, system_text: str, user_text: str, params: GenerationParams) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_text},
                {"role": "user", "content": user_text},
            ],
            "temperature": params.temperature,
        }
        if params.max_tokens is not None and config.SEND_MAX_TOKENS:
            payload["max_tokens"] = int(params.max_tokens)
        return payload

    async def generate(
        self,
        system_text: str,
        user_text: str,
        params: Optional[GenerationParams] = None,
    ) -> str:
        params = params or GenerationParams()
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = perf_counter()
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        status: Any = None
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport) as client:
                try:
                    response = await client.post(
                        self.api_url,
                        json=self._payload(system_text, user_text, params),
                        headers=headers,
                    )
                    status = response.status_code
                    response.raise_for_status()
                    data = response.json()
                except httpx.HTTPStatusError as exc:
                    raise GenerationError(
                        f"LLM-HTTP {exc.response.status_code}: {exc.response.text[:300]}"
                    ) from exc
                except httpx.TimeoutException as exc:
                    raise GenerationError(f"LLM request timed out after {self.request_timeout}s") from exc
                except httpx.RequestError as exc:
                    raise GenerationError(f"LLM transport error: {exc}") from exc
                except ValueError as exc:
                    raise GenerationError("LLM returned a non-JSON envelope") from exc

            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                tokens_in = usage.get("prompt_tokens")
                tokens_out = usage.get("completion_tokens")

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as exc:
                raise GenerationError(f"Unexpected LLM response: {str(data)[:300]}") from exc
            if not isinstance(content, str) or not content.strip():
                raise GenerationError("LLM returned empty content")
            return content
        finally:
            latency_ms = int((perf_counter() - start) * 1000)
            log_record = {
                "event": "llm_call",
                "model": self.model,
                "status": status,
                "latency_ms": latency_ms,
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


async def generate_with_timeout(
    client: Any,
    system_text: str,
    user_text: str,
    params: Optional[GenerationParams] = None,
    *,
    timeout: Optional[float] = None,
) -> str:
    """Run one generation call bounded by ``timeout`` seconds.

    A timeout is reported as :class:`GenerationError`; any other unexpected
    exception from the client is wrapped the same way. Cancellation of the
    caller cancels the in-flight request.
    """

    limit = config.LLM_TIMEOUT if timeout is None else timeout
    try:
        return await asyncio.wait_for(client.generate(system_text, user_text, params), timeout=limit)
    except asyncio.TimeoutError as exc:
        raise GenerationError(f"generation exceeded {limit}s") from exc
    except GenerationError:
        raise
    except Exception as exc:
        raise GenerationError(f"generation failed: {exc}") from exc
