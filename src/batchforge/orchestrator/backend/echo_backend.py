"""Deterministic in-process backend for local runs and tests."""

from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import Mapping

from batchforge.orchestrator.backend.base import GenerationRequest, GenerationResult
from batchforge.orchestrator.failure_classifier import classify_failure


class EchoBackend:
    """Pretends to generate an image; the asset id is a digest of the request.

    ``fail_models`` maps a model id to the provider error message it should
    fail with, which goes through the regular failure classifier.
    """

    def __init__(
        self,
        *,
        fail_models: Mapping[str, str] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.fail_models = dict(fail_models or {})
        self.delay_seconds = delay_seconds
        self._lock = threading.Lock()
        self.calls: list[str] = []

    def generate(self, request: GenerationRequest) -> GenerationResult:
        with self._lock:
            self.calls.append(request.sub_task_id)
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)

        message = self.fail_models.get(request.model_id)
        if message is not None:
            classification = classify_failure(message=message)
            return GenerationResult.failure(classification.category, message)

        digest = hashlib.sha256(
            "|".join(
                (
                    request.model_id,
                    request.prompt,
                    request.negative_prompt or "",
                    request.aspect_ratio,
                    str(request.seed),
                    str(request.batch_index),
                ),
            ).encode("utf-8"),
        ).hexdigest()
        return GenerationResult.ok(
            {
                "asset_id": digest[:16],
                "model_id": request.model_id,
                "aspect_ratio": request.aspect_ratio,
                "prompt_chars": len(request.prompt),
            },
        )
