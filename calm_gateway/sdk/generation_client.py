"""
Generation service client.

Wraps an OpenAI-compatible chat completions endpoint and reports every
failure as a typed GenerationError instead of an SDK exception.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import openai
from openai import OpenAI

from ..core.token_counter import CHARS_PER_TOKEN, estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_API_KEY_ENV = "GEMINI_API_KEY"
DEFAULT_TIMEOUT_SECONDS = 30.0


class GenerationError(Exception):
    """Base class for generation failures."""
    kind = "generation_error"


class TransportFailure(GenerationError):
    """The service could not be reached, or the call timed out."""
    kind = "transport_failure"


class UpstreamRejected(GenerationError):
    """The service answered with a non-success status."""
    kind = "upstream_rejected"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmptyOutput(GenerationError):
    """The call succeeded but returned no usable text."""
    kind = "empty_output"


@dataclass(frozen=True)
class GenerationOptions:
    """Sampling controls for one generation call.

    Attributes:
        temperature: Sampling temperature in [0, 1]
        max_output_tokens: Upper bound on reply length, > 0
        top_p: Nucleus sampling mass in (0, 1]
        top_k: Candidate pool size, > 0; None leaves the service default
    """
    temperature: float = 0.7
    max_output_tokens: int = 1000
    top_p: float = 0.9
    top_k: Optional[int] = None

    def __post_init__(self):
        """Validate option ranges."""
        if not 0.0 <= self.temperature <= 1.0:
            raise ValueError("temperature must be between 0 and 1")
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("top_p must be in (0, 1]")
        if self.top_k is not None and self.top_k <= 0:
            raise ValueError("top_k must be > 0")


CHAT_OPTIONS = GenerationOptions(temperature=0.7, max_output_tokens=500, top_p=0.9)
MOOD_ANALYSIS_OPTIONS = GenerationOptions(temperature=0.3, max_output_tokens=1500, top_p=0.8, top_k=10)
DAY_MOOD_OPTIONS = GenerationOptions(temperature=0.3, max_output_tokens=200, top_p=0.8, top_k=10)
SONG_OPTIONS = GenerationOptions(temperature=0.7, max_output_tokens=1500)
CUSTOM_SONG_OPTIONS = GenerationOptions(temperature=0.8, max_output_tokens=1000, top_p=0.9, top_k=20)


@dataclass(frozen=True)
class GenerationResult:
    """Text produced by the service plus the token counts it reported."""
    text: str
    model: str
    output_tokens: Optional[int] = None
    prompt_tokens: Optional[int] = None

    def billed_output_tokens(self, chars_per_token: int = CHARS_PER_TOKEN) -> int:
        """Reported output tokens, or an estimate from the text when not reported."""
        if self.output_tokens is not None:
            return self.output_tokens
        return estimate_tokens(self.text, chars_per_token)


class GenerationClient:
    """Client for the external text-generation service.

    SDK retries are disabled: every failure reaches the caller at once.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        api_key_env: str = DEFAULT_API_KEY_ENV,
    ):
        """Initialize the client.

        Args:
            model: Model name (required)
            api_key: API key; read from ``api_key_env`` when omitted
            base_url: OpenAI-compatible endpoint
            timeout: Default per-call timeout in seconds
            api_key_env: Environment variable holding the API key

        Raises:
            ValueError: If model is empty, timeout is not positive, or no API key is available
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")

        api_key = api_key or os.environ.get(api_key_env)
        if not api_key:
            raise ValueError(f"API key is required: pass api_key or set {api_key_env}")

        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    def generate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """Generate text for a prompt.

        Args:
            prompt: Fully assembled prompt (required)
            options: Sampling controls, defaults to GenerationOptions()
            timeout: Seconds before the call is abandoned, defaults to the client timeout

        Returns:
            GenerationResult with the stripped text

        Raises:
            ValueError: If prompt is empty
            TransportFailure: On connection errors and timeouts
            UpstreamRejected: On non-success responses
            EmptyOutput: If the response carries no text
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        options = options or GenerationOptions()

        request = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "max_tokens": options.max_output_tokens,
            "top_p": options.top_p,
            "timeout": timeout if timeout is not None else self.timeout,
        }
        if options.top_k is not None:
            request["extra_body"] = {"top_k": options.top_k}

        try:
            response = self.client.chat.completions.create(**request)
        except openai.APITimeoutError as e:
            logger.warning("Generation timed out after %ss: %s", request["timeout"], e)
            raise TransportFailure(f"Generation request timed out: {e}") from e
        except openai.APIConnectionError as e:
            logger.warning("Generation service unreachable: %s", e)
            raise TransportFailure(f"Generation service unreachable: {e}") from e
        except openai.APIStatusError as e:
            logger.warning("Generation service rejected the request with status %s: %s", e.status_code, e)
            raise UpstreamRejected(f"Generation service returned {e.status_code}", e.status_code) from e
        except openai.APIError as e:
            logger.warning("Generation service returned an unusable response: %s", e)
            raise UpstreamRejected(f"Generation service error: {e}") from e

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        if not text:
            logger.warning("Generation service returned no text for model %s", self.model)
            raise EmptyOutput("Generation service returned no text")

        usage = response.usage
        return GenerationResult(
            text=text,
            model=self.model,
            output_tokens=usage.completion_tokens if usage else None,
            prompt_tokens=usage.prompt_tokens if usage else None,
        )
