"""
Unit tests for SDK layer.

Tests the generation client wrapper: request shape, option handling and
the mapping of SDK failures onto typed generation errors.
"""

from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from calm_gateway.sdk.generation_client import (
    CHAT_OPTIONS,
    MOOD_ANALYSIS_OPTIONS,
    DEFAULT_BASE_URL,
    EmptyOutput,
    GenerationClient,
    GenerationOptions,
    GenerationResult,
    TransportFailure,
    UpstreamRejected,
)

REQUEST = httpx.Request("POST", "https://example.test/v1/chat/completions")


def make_response(text="Hello there", prompt_tokens=12, completion_tokens=3):
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = text
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    return response


class TestGenerationClientInit:
    """Test GenerationClient construction."""

    @patch('calm_gateway.sdk.generation_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test SDK retries are disabled and the timeout is passed through."""
        client = GenerationClient(model="gemini-2.0-flash", api_key="key", timeout=12.0)

        assert client.model == "gemini-2.0-flash"
        assert client.timeout == 12.0
        mock_openai_class.assert_called_once_with(
            api_key="key",
            base_url=DEFAULT_BASE_URL,
            timeout=12.0,
            max_retries=0,
        )

    @patch('calm_gateway.sdk.generation_client.OpenAI')
    def test_api_key_from_environment(self, mock_openai_class, monkeypatch):
        """Test the API key is read from the configured variable."""
        monkeypatch.setenv("CALM_TEST_KEY", "from-env")

        GenerationClient(api_key_env="CALM_TEST_KEY")

        assert mock_openai_class.call_args.kwargs["api_key"] == "from-env"

    def test_missing_api_key(self, monkeypatch):
        """Test initialization fails without a key."""
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(ValueError, match="API key is required"):
            GenerationClient()

    def test_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            GenerationClient(model="", api_key="key")

    def test_invalid_timeout(self):
        """Test a non-positive timeout is rejected."""
        with pytest.raises(ValueError, match="timeout must be > 0"):
            GenerationClient(api_key="key", timeout=0)


class TestGenerate:
    """Test GenerationClient.generate."""

    def setup_method(self):
        """Set up a client around a mocked SDK."""
        patcher = patch('calm_gateway.sdk.generation_client.OpenAI')
        self.patcher = patcher
        mock_openai_class = patcher.start()
        self.sdk = Mock()
        mock_openai_class.return_value = self.sdk
        self.client = GenerationClient(model="gemini-2.0-flash", api_key="key", timeout=30.0)

    def teardown_method(self):
        """Stop patching."""
        self.patcher.stop()

    def test_success(self):
        """Test text and token counts are returned."""
        self.sdk.chat.completions.create.return_value = make_response("  Breathe slowly.  ", 40, 4)

        result = self.client.generate("I feel anxious", CHAT_OPTIONS)

        assert result == GenerationResult(
            text="Breathe slowly.",
            model="gemini-2.0-flash",
            output_tokens=4,
            prompt_tokens=40,
        )

    def test_request_shape(self):
        """Test the prompt and sampling options reach the SDK."""
        self.sdk.chat.completions.create.return_value = make_response()

        self.client.generate("hello", CHAT_OPTIONS)

        kwargs = self.sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gemini-2.0-flash"
        assert kwargs["messages"] == [{"role": "user", "content": "hello"}]
        assert kwargs["temperature"] == 0.7
        assert kwargs["max_tokens"] == 500
        assert kwargs["top_p"] == 0.9
        assert kwargs["timeout"] == 30.0
        assert "extra_body" not in kwargs

    def test_top_k_sent_as_extra_body(self):
        """Test top_k travels outside the standard parameters."""
        self.sdk.chat.completions.create.return_value = make_response()

        self.client.generate("analyze", MOOD_ANALYSIS_OPTIONS)

        kwargs = self.sdk.chat.completions.create.call_args.kwargs
        assert kwargs["extra_body"] == {"top_k": 10}

    def test_per_call_timeout(self):
        """Test a per-call timeout overrides the client default."""
        self.sdk.chat.completions.create.return_value = make_response()

        self.client.generate("hello", timeout=5.0)

        assert self.sdk.chat.completions.create.call_args.kwargs["timeout"] == 5.0

    def test_missing_usage(self):
        """Test absent usage leaves token counts unset and billing falls back to estimation."""
        response = make_response("abcdefgh")
        response.usage = None
        self.sdk.chat.completions.create.return_value = response

        result = self.client.generate("hello")

        assert result.output_tokens is None
        assert result.billed_output_tokens() == 2

    def test_empty_prompt(self):
        """Test an empty prompt is a caller error."""
        with pytest.raises(ValueError, match="prompt is required"):
            self.client.generate("   ")
        self.sdk.chat.completions.create.assert_not_called()

    def test_timeout_is_transport_failure(self):
        """Test a timed-out call maps to TransportFailure."""
        self.sdk.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)

        with pytest.raises(TransportFailure) as excinfo:
            self.client.generate("hello")

        assert excinfo.value.kind == "transport_failure"

    def test_connection_error_is_transport_failure(self):
        """Test an unreachable service maps to TransportFailure."""
        self.sdk.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)

        with pytest.raises(TransportFailure):
            self.client.generate("hello")

    @pytest.mark.parametrize("status_code", [400, 429, 500, 503])
    def test_status_error_is_upstream_rejected(self, status_code):
        """Test non-success statuses map to UpstreamRejected with the code."""
        response = httpx.Response(status_code, request=REQUEST)
        self.sdk.chat.completions.create.side_effect = openai.APIStatusError(
            "rejected", response=response, body=None
        )

        with pytest.raises(UpstreamRejected) as excinfo:
            self.client.generate("hello")

        assert excinfo.value.status_code == status_code
        assert excinfo.value.kind == "upstream_rejected"

    def test_malformed_response_is_upstream_rejected(self):
        """Test other SDK errors map to UpstreamRejected without a status."""
        self.sdk.chat.completions.create.side_effect = openai.APIError("bad body", request=REQUEST, body=None)

        with pytest.raises(UpstreamRejected) as excinfo:
            self.client.generate("hello")

        assert excinfo.value.status_code is None

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_blank_text_is_empty_output(self, text):
        """Test a response without text maps to EmptyOutput."""
        self.sdk.chat.completions.create.return_value = make_response(text)

        with pytest.raises(EmptyOutput):
            self.client.generate("hello")

    def test_no_choices_is_empty_output(self):
        """Test a response without choices maps to EmptyOutput."""
        response = make_response()
        response.choices = []
        self.sdk.chat.completions.create.return_value = response

        with pytest.raises(EmptyOutput):
            self.client.generate("hello")


class TestGenerationOptions:
    """Test option validation."""

    @pytest.mark.parametrize("kwargs, message", [
        ({"temperature": 1.5}, "temperature"),
        ({"temperature": -0.1}, "temperature"),
        ({"max_output_tokens": 0}, "max_output_tokens"),
        ({"top_p": 0}, "top_p"),
        ({"top_k": 0}, "top_k"),
    ])
    def test_invalid_options(self, kwargs, message):
        """Test out-of-range options are rejected."""
        with pytest.raises(ValueError, match=message):
            GenerationOptions(**kwargs)

    def test_reported_tokens_preferred(self):
        """Test reported output tokens are billed as-is."""
        result = GenerationResult(text="x" * 400, model="m", output_tokens=7)
        assert result.billed_output_tokens() == 7
