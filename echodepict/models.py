from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from typing import Any, Protocol, TypeGuard, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidConfigError

_LOGGER = logging.getLogger("echodepict.models")

EXTERNAL_PREFIX = "external:"

T = TypeVar("T", bound=BaseModel)


class GenerativeInvoker(Protocol):
    """Prompt in, schema-validated JSON value out."""

    async def invoke(self, prompt: str, schema: type[T]) -> T: ...


class ExternalModelSpec(BaseModel):
    model: str
    api_key: str | None = None
    temperature: float | None = None
    litellm_kwargs: Mapping[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")


InvokerSpec = str | ExternalModelSpec | GenerativeInvoker


def is_invoker(obj: object) -> TypeGuard[GenerativeInvoker]:
    return callable(getattr(obj, "invoke", None))


def _strip_prefix(model: str) -> str:
    if model.startswith(EXTERNAL_PREFIX):
        return model.removeprefix(EXTERNAL_PREFIX)
    return model


def _build_litellm_invoker(
    model: str,
    *,
    api_key: str | None = None,
    temperature: float | None = None,
    litellm_kwargs: Mapping[str, Any] | None = None,
) -> GenerativeInvoker:
    from .providers.litellm import LiteLLMInvoker

    return LiteLLMInvoker(
        model=model,
        api_key=api_key,
        temperature=temperature,
        litellm_kwargs=litellm_kwargs,
    )


def resolve_invoker(
    spec: InvokerSpec,
    *,
    api_key: str | None = None,
    temperature: float | None = None,
) -> GenerativeInvoker:
    """Turn a model string, an ExternalModelSpec or an invoker into an invoker.

    ``api_key`` and ``temperature`` apply only to plain model strings.
    """

    if isinstance(spec, ExternalModelSpec):
        target = _strip_prefix(spec.model)
        if not target:
            raise InvalidConfigError("ExternalModelSpec.model must not be empty")
        return _build_litellm_invoker(
            target,
            api_key=spec.api_key,
            temperature=spec.temperature,
            litellm_kwargs=spec.litellm_kwargs,
        )

    if isinstance(spec, str):
        target = _strip_prefix(spec.strip())
        if not target:
            raise InvalidConfigError("Model name must not be empty")
        return _build_litellm_invoker(target, api_key=api_key, temperature=temperature)

    if is_invoker(spec):
        return spec

    raise InvalidConfigError(f"Unknown invoker spec: {spec!r}")


def owns_invoker(spec: InvokerSpec) -> bool:
    """Invokers built from strings or specs belong to the caller that resolved them."""

    return isinstance(spec, (str, ExternalModelSpec))


async def close_invoker(invoker: GenerativeInvoker | None) -> None:
    if invoker is None:
        return
    aclose = getattr(invoker, "aclose", None)
    if callable(aclose):
        try:
            result = aclose()
            if inspect.isawaitable(result):
                await result
            return
        except Exception as exc:
            _LOGGER.warning("Invoker async close failed: %s", exc, exc_info=True)
            return
    close = getattr(invoker, "close", None)
    if callable(close):
        try:
            close()
        except Exception as exc:
            _LOGGER.warning("Invoker close failed: %s", exc, exc_info=True)
