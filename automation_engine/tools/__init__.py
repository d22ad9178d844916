"""Built-in capability implementations."""

from .http_request import HttpRequestCapability
from .simulated import EchoAiCapability, LogMessageCapability

__all__ = [
    "HttpRequestCapability",
    "EchoAiCapability",
    "LogMessageCapability",
]
