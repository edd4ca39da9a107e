"""
SDK for the Calm Sphere gateway.

Provides the client for the external text-generation service.
"""

from .generation_client import (
    EmptyOutput,
    GenerationClient,
    GenerationError,
    GenerationOptions,
    GenerationResult,
    TransportFailure,
    UpstreamRejected,
)

__all__ = [
    "EmptyOutput",
    "GenerationClient",
    "GenerationError",
    "GenerationOptions",
    "GenerationResult",
    "TransportFailure",
    "UpstreamRejected",
]
