"""LiteLLM-backed :class:`~echodepict.models.GenerativeInvoker`.

LiteLLM caches async HTTP clients per event loop, so every request runs on
one long-lived background loop. That keeps an invoker usable across separate
``asyncio.run`` calls (the sync ``compose`` wrapper does exactly that).
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import warnings
from collections.abc import Iterator, Mapping
from threading import Event, Lock, Thread
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

from json_repair import repair_json
from pydantic import BaseModel, RootModel

from ..errors import GenerationError, InvalidConfigError, ModelNotAvailableError, SchemaViolationError
from ..models import EXTERNAL_PREFIX
from ..stages import validate_payload

_LOGGER = logging.getLogger("echodepict.providers.litellm")
_RESERVED_KWARGS = frozenset({"model", "messages", "response_format", "api_key"})
_SNIPPET_LIMIT = 200

T = TypeVar("T", bound=BaseModel)
R = TypeVar("R")


def _safe_async_cleanup(cleanup: Callable[[], Awaitable[None]]) -> None:
    """Run an async cleanup from sync code, whatever the current loop state."""

    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None

    if running is not None:
        try:
            running.create_task(cleanup())  # type: ignore[arg-type]
        except Exception as exc:
            _LOGGER.warning("LiteLLM cleanup could not be scheduled: %s", exc, exc_info=True)
        return
    try:
        asyncio.run(cleanup())  # type: ignore[arg-type]
    except Exception as exc:
        _LOGGER.warning("LiteLLM cleanup failed: %s", exc, exc_info=True)


class _BackgroundLoop:
    """A daemon thread running one event loop until interpreter exit."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = Lock()
        self._ready = Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: Thread | None = None
        self._exit_hook_registered = False

    def _serve(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
            loop.run_until_complete(loop.shutdown_asyncgens())
        except Exception as exc:
            _LOGGER.info("%s shutdown failed: %s", self._name, exc, exc_info=True)
        finally:
            loop.close()

    def get(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._ready.clear()
                self._thread = Thread(target=self._serve, name=self._name, daemon=True)
                self._thread.start()
                self._ready.wait()
            if not self._exit_hook_registered:
                atexit.register(self.stop)
                self._exit_hook_registered = True
        if self._loop is None:
            raise RuntimeError(f"{self._name} failed to start")
        return self._loop

    async def run(self, coro: Coroutine[Any, Any, R]) -> R:
        loop = self.get()
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            return await coro
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            future.cancel()
            raise

    def stop(self) -> None:
        loop, thread = self._loop, self._thread
        if loop is None or thread is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(loop.stop)
        except RuntimeError as exc:
            _LOGGER.info("%s stop failed: %s", self._name, exc)
        thread.join(timeout=1.0)


_LOOP = _BackgroundLoop("echodepict-litellm-loop")


class _LiteLLMState:
    """One-time process tweaks applied before the first request."""

    def __init__(self) -> None:
        self._prepared = False
        self._exit_guard_installed = False

    def prepare(self, litellm_module: Any) -> None:
        if self._prepared:
            return
        self._prepared = True
        litellm_module.turn_off_message_logging = True
        litellm_module.disable_streaming_logging = True
        warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
        atexit.register(self._close_clients_at_exit)

    def _close_clients_at_exit(self) -> None:
        # LiteLLM's own exit hook calls asyncio.get_event_loop(), which fails
        # once the main loop is closed; hand it a fresh loop instead.
        if not self._exit_guard_installed:
            self._exit_guard_installed = True
            original = asyncio.get_event_loop

            def get_event_loop() -> asyncio.AbstractEventLoop:
                try:
                    loop = original()
                except RuntimeError:
                    loop = None
                if loop is None or loop.is_closed():
                    loop = asyncio.new_event_loop()
                    asyncio.set_event_loop(loop)
                return loop

            asyncio.get_event_loop = get_event_loop  # type: ignore[assignment]
        try:
            from litellm.llms.custom_httpx.async_client_cleanup import (  # type: ignore[import]
                close_litellm_async_clients,
            )
        except ImportError as exc:
            _LOGGER.debug("LiteLLM client cleanup unavailable: %s", exc)
            return
        _safe_async_cleanup(close_litellm_async_clients)


_STATE = _LiteLLMState()


def _extract_json_payload(content: str) -> str | None:
    """Return the outermost JSON object or array embedded in ``content``."""

    starts = [index for index in (content.find("{"), content.find("[")) if index != -1]
    if not starts:
        return None
    start = min(starts)
    end = content.rfind("}" if content[start] == "{" else "]")
    if end <= start:
        return None
    return content[start : end + 1]


def _snippet(content: str) -> str:
    cleaned = content.strip()
    if len(cleaned) <= _SNIPPET_LIMIT:
        return cleaned or "<empty>"
    return f"{cleaned[:_SNIPPET_LIMIT]}..."


def _candidate_payloads(content: str) -> Iterator[str]:
    """The raw content, then the embedded JSON value, then a repaired copy."""

    seen: set[str] = set()
    for candidate in (content, _extract_json_payload(content)):
        if candidate and candidate not in seen:
            seen.add(candidate)
            yield candidate
    repaired = repair_json(content)
    if isinstance(repaired, str) and repaired.strip() and repaired not in seen:
        yield repaired


def _message_content(response: Any) -> str:
    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError) as exc:
        raise SchemaViolationError("LiteLLM response has no choices") from exc
    if not isinstance(content, str) or not content.strip():
        raise SchemaViolationError("LiteLLM returned empty content")
    return content.strip()


class LiteLLMInvoker:
    """Sends a stage prompt through ``litellm.acompletion`` and validates the reply.

    Object schemas are also passed as ``response_format`` so providers with
    structured output can enforce them; top-level array schemas (the
    narration script) are not, since those providers reject them.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        litellm_kwargs: Mapping[str, Any] | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
    ) -> None:
        extra = dict(litellm_kwargs or {})
        reserved = sorted(_RESERVED_KWARGS.intersection(extra))
        if reserved:
            raise InvalidConfigError(f"litellm_kwargs cannot override: {', '.join(reserved)}")
        self._model = model.removeprefix(EXTERNAL_PREFIX)
        self._api_key = api_key or None
        self._temperature = temperature
        self._system_prompt = system_prompt
        self._extra = extra

    @property
    def model(self) -> str:
        return self._model

    def __repr__(self) -> str:
        return f"LiteLLMInvoker(model={self._model!r})"

    def _request(self, prompt: str, schema: type[BaseModel]) -> dict[str, Any]:
        messages = [{"role": "user", "content": prompt}]
        if self._system_prompt:
            messages.insert(0, {"role": "system", "content": self._system_prompt})
        request: dict[str, Any] = {"model": self._model, "messages": messages}
        if not issubclass(schema, RootModel):
            request["response_format"] = schema
        if self._temperature is not None:
            request["temperature"] = self._temperature
        if self._api_key is not None:
            request["api_key"] = self._api_key
        request.update(self._extra)
        return request

    async def invoke(self, prompt: str, schema: type[T]) -> T:
        try:
            import litellm  # type: ignore[import]
        except ImportError as exc:
            raise ModelNotAvailableError("litellm is not installed") from exc

        _STATE.prepare(litellm)
        _LOGGER.debug("Prompt for %s:\n%s", self._model, prompt)
        try:
            response = await _LOOP.run(litellm.acompletion(**self._request(prompt, schema)))
        except Exception as exc:
            _LOGGER.warning("LiteLLM request to %s failed: %s", self._model, exc, exc_info=True)
            raise GenerationError(f"{self._model} request failed: {exc}") from exc

        content = _message_content(response)
        _LOGGER.debug("Reply from %s:\n%s", self._model, content)
        for attempt, candidate in enumerate(_candidate_payloads(content)):
            try:
                return validate_payload(schema, candidate)
            except SchemaViolationError as exc:
                _LOGGER.debug("%s candidate %d rejected: %s", schema.__name__, attempt, exc)

        snippet = _snippet(content)
        _LOGGER.warning("%s reply does not match %s: %s", self._model, schema.__name__, snippet)
        raise SchemaViolationError(
            f"{self._model} returned content not matching {schema.__name__}: {snippet}"
        )

    async def aclose(self) -> None:
        """Close LiteLLM's cached async clients on the loop that created them."""

        try:
            import litellm  # type: ignore[import]
        except ImportError:
            return
        close: Any = getattr(litellm, "aclose", None) or getattr(
            litellm, "close_litellm_async_clients", None
        )
        if close is None:
            return
        try:
            await _LOOP.run(close())
        except Exception as exc:
            _LOGGER.warning("LiteLLM close failed: %s", exc, exc_info=True)

    def close(self) -> None:
        _safe_async_cleanup(self.aclose)
