"""OpenRouter API client for LLM-backed judges."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from . import config
from .telemetry import (
    is_telemetry_enabled,
    record_span_error,
    setup_telemetry,
    span_attributes,
    trace_span,
)

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0
RETRYABLE_STATUS_CODES = frozenset({408, 429, 502, 503})

_shared_client: httpx.AsyncClient | None = None


@dataclass(frozen=True)
class ModelError:
    """A failed model query, classified for the caller."""

    model: str
    status_code: int | None
    category: str  # billing, auth, rate_limit, transient, timeout, unknown
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _classify_error(status_code: int | None) -> str:
    if status_code is None:
        return "timeout"
    if status_code == 402:
        return "billing"
    if status_code == 401:
        return "auth"
    if status_code == 429:
        return "rate_limit"
    if status_code in (408, 502, 503):
        return "transient"
    return "unknown"


def is_model_error(result: Any) -> bool:
    return isinstance(result, ModelError)


def get_shared_client() -> httpx.AsyncClient:
    """Get (or lazily create) the process-wide OpenRouter client."""
    global _shared_client
    if _shared_client is None or _shared_client.is_closed:
        setup_telemetry()
        _shared_client = httpx.AsyncClient(timeout=120.0)
    return _shared_client


async def close_shared_client() -> None:
    global _shared_client
    if _shared_client is not None:
        await _shared_client.aclose()
        _shared_client = None


async def query_model(
    model: str,
    messages: list[dict[str, str]],
    timeout: float = 120.0,
) -> dict[str, Any] | ModelError:
    """
    Query a single model via OpenRouter API.

    Retries 408/429/502/503 responses with exponential backoff.

    Args:
        model: OpenRouter model identifier (e.g., "openai/gpt-4o")
        messages: List of message dicts with 'role' and 'content'
        timeout: Request timeout in seconds

    Returns:
        Response dict with 'content' and 'metrics', or a ModelError
    """
    attributes = span_attributes(llm_model=model, llm_message_count=len(messages))

    with trace_span("llm.query_model", attributes) as span:
        headers = {
            "Authorization": f"Bearer {config.OPENROUTER_API_KEY}",
            "Content-Type": "application/json",
        }
        payload = {"model": model, "messages": messages}
        client = get_shared_client()

        for attempt in range(1, MAX_RETRIES + 1):
            start_time = time.time()
            try:
                response = await client.post(
                    config.OPENROUTER_API_URL,
                    headers=headers,
                    json=payload,
                    timeout=timeout,
                )
                response.raise_for_status()

                latency_ms = int((time.time() - start_time) * 1000)
                data = response.json()
                message = data['choices'][0]['message']
                usage = data.get('usage', {})

                if is_telemetry_enabled():
                    span.set_attributes({
                        "llm.total_tokens": usage.get('total_tokens', 0),
                        "llm.latency_ms": latency_ms,
                        "llm.attempts": attempt,
                    })

                return {
                    'content': message.get('content'),
                    'metrics': {
                        'prompt_tokens': usage.get('prompt_tokens', 0),
                        'completion_tokens': usage.get('completion_tokens', 0),
                        'total_tokens': usage.get('total_tokens', 0),
                        'cost': usage.get('cost', 0.0),
                        'latency_ms': latency_ms,
                        'actual_model': data.get('model'),
                        'request_id': data.get('id'),
                        'provider': data.get('provider'),
                    },
                }

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
                    delay = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.info(
                        "Retrying model query. Model: %s, Status: %d, Attempt: %d, Delay: %.1fs",
                        model, status_code, attempt, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.warning("Model query failed. Model: %s, Status: %d", model, status_code)
                record_span_error(span, e)
                return ModelError(
                    model=model,
                    status_code=status_code,
                    category=_classify_error(status_code),
                    message=str(e),
                )

            except httpx.TimeoutException as e:
                logger.warning("Model query timed out. Model: %s", model)
                record_span_error(span, e)
                return ModelError(model=model, status_code=None, category="timeout", message=str(e))

            except Exception as e:
                logger.warning("Error querying model %s: %s", model, e)
                record_span_error(span, e)
                return ModelError(model=model, status_code=None, category="unknown", message=str(e))

        # Unreachable: the last attempt either returns or records an error
        return ModelError(model=model, status_code=None, category="unknown", message="retries exhausted")
