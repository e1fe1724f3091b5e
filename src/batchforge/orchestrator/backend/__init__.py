"""Generation backend implementations."""

from batchforge.orchestrator.backend.base import (
    GenerationBackend,
    GenerationRequest,
    GenerationResult,
    PromptExpander,
)
from batchforge.orchestrator.backend.echo_backend import EchoBackend
from batchforge.orchestrator.backend.http_backend import HttpGenerationBackend
from batchforge.orchestrator.backend.template_expander import TemplateExpander

__all__ = [
    "EchoBackend",
    "GenerationBackend",
    "GenerationRequest",
    "GenerationResult",
    "HttpGenerationBackend",
    "PromptExpander",
    "TemplateExpander",
]
