"""Shared helpers: logging setup and token estimation."""

from .tokens import CHARS_PER_TOKEN, PER_MESSAGE_OVERHEAD, estimate_message_tokens, estimate_tokens

__all__ = ["CHARS_PER_TOKEN", "PER_MESSAGE_OVERHEAD", "estimate_tokens", "estimate_message_tokens"]
