from __future__ import annotations

from .litellm import LiteLLMInvoker

__all__ = ["LiteLLMInvoker"]
