"""HTTP generation backend built on httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from batchforge.orchestrator.backend.base import GenerationRequest, GenerationResult
from batchforge.orchestrator.failure_classifier import classify_failure
from batchforge.orchestrator.models import ErrorCategory

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_USER_AGENT = "batchforge/0.1"
_ERROR_BODY_PREVIEW_CHARS = 500


class HttpGenerationBackend:
    """POSTs each unit to ``{base_url}/generate`` and maps the reply to a result.

    Expected success payload is a JSON object, stored as the unit's result
    metadata. Error statuses, timeouts and transport errors are classified
    into error categories instead of raised.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpGenerationBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def generate(self, request: GenerationRequest) -> GenerationResult:
        try:
            response = self._client.post("/generate", json=_payload(request))
            response.raise_for_status()
        except httpx.HTTPStatusError as error:
            body = error.response.text[:_ERROR_BODY_PREVIEW_CHARS]
            classification = classify_failure(
                message=body,
                status_code=error.response.status_code,
            )
            logger.warning(
                "Provider returned HTTP %d for unit %s: %s",
                error.response.status_code,
                request.sub_task_id,
                classification.category.value,
            )
            return GenerationResult.failure(
                classification.category,
                f"HTTP {error.response.status_code}: {body}",
            )
        except httpx.TimeoutException as error:
            logger.warning("Provider timeout for unit %s: %s", request.sub_task_id, error)
            return GenerationResult.failure(ErrorCategory.TIMEOUT, f"Timeout: {error}")
        except httpx.TransportError as error:
            logger.warning("Provider unreachable for unit %s: %s", request.sub_task_id, error)
            return GenerationResult.failure(
                ErrorCategory.NETWORK_ERROR,
                f"Network error: {error}",
            )

        try:
            metadata = response.json()
        except ValueError:
            return GenerationResult.failure(
                ErrorCategory.PROVIDER_ERROR,
                "Provider returned a non-JSON response.",
            )
        if not isinstance(metadata, dict):
            return GenerationResult.failure(
                ErrorCategory.PROVIDER_ERROR,
                "Provider response must be a JSON object.",
            )
        return GenerationResult.ok(metadata)


def _payload(request: GenerationRequest) -> dict[str, Any]:
    return {
        "sub_task_id": request.sub_task_id,
        "task_id": request.task_id,
        "model": request.model_id,
        "style": request.style_id,
        "prompt": request.prompt,
        "negative_prompt": request.negative_prompt,
        "aspect_ratio": request.aspect_ratio,
        "seed": request.seed,
    }
