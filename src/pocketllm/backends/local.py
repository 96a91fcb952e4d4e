"""On-device backend driving a native GGUF runtime.

The native runtime is a blocking, process-wide resource: one model at a
time, progress reported through a callback fired from the inference
thread. :class:`LlmEngine` owns that lifecycle and :class:`LocalBackend`
adapts it to the same event stream the remote backend produces. A
``"complete"`` progress event ends the token stream; the text the runtime
returns from the worker thread becomes the final ``Complete`` result.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Any, AsyncIterator, Callable, List, Mapping, Protocol, Sequence

from ..chat.models import GenerationParams, TokenUsage
from ..errors import BackendUnavailable, PocketLLMError
from ..models.local_models import LocalModelStore, validate_gguf
from .base import StreamAccumulator
from .events import Complete, Delta, Error, StreamEvent
from .thinking import split_thinking

__all__ = [
    "EngineState",
    "InferenceProgress",
    "LlmEngine",
    "LocalBackend",
    "NativeRuntime",
    "LOAD_STATUS_MESSAGES",
]

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, str], None]

LOAD_STATUS_MESSAGES = {
    -1: "Native state corrupted; please restart the app",
    1: "Failed to load model",
    2: "Failed to create context",
    3: "Failed to load vision projector",
}
_ERROR_PREFIX = "ERROR: "
_DEFAULT_SAMPLING = {
    "max_tokens": 2048,
    "temperature": 0.7,
    "top_p": 0.95,
    "top_k": 40,
    "min_p": 0.05,
    "repeat_penalty": 1.1,
}


class NativeRuntime(Protocol):
    """Contract of the native inference library."""

    def init(self, resource_path: str) -> None:
        ...

    def load_model(self, model_path: str, projector_path: str, gpu_offload_percent: int, context_size: int) -> int:
        ...

    def infer_chat(
        self,
        messages_json: str,
        max_tokens: int,
        temperature: float,
        top_p: float,
        top_k: int,
        min_p: float,
        repeat_penalty: float,
    ) -> str:
        ...

    def cancel(self) -> None:
        ...

    def unload(self) -> None:
        ...

    def set_progress_callback(self, callback: ProgressCallback | None) -> None:
        ...


class EngineState(enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    INFERRING = "inferring"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class InferenceProgress:
    phase: str
    tokens_generated: int
    token_text: str = ""


class LlmEngine:
    """Thread-safe owner of the native runtime.

    ``unload()`` may be called from any thread (for example by a memory
    pressure handler) and is idempotent. Each unload bumps
    :attr:`unload_epoch` so an in-flight stream can tell its model went
    away underneath it.
    """

    def __init__(self, runtime: NativeRuntime) -> None:
        self._runtime = runtime
        self._lock = threading.RLock()
        self._state = EngineState.UNLOADED
        self._error: str | None = None
        self._initialized = False
        self._loaded_path: str | None = None
        self._unload_epoch = 0
        self._listeners: List[ProgressCallback] = []
        self._pending: asyncio.Future[Any] | None = None
        runtime.set_progress_callback(self._on_native_progress)

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def loaded_path(self) -> str | None:
        return self._loaded_path

    @property
    def unload_epoch(self) -> int:
        return self._unload_epoch

    def is_ready(self) -> bool:
        return self._state in (EngineState.READY, EngineState.INFERRING)

    def init(self, resource_path: str) -> None:
        with self._lock:
            if self._initialized:
                return
            self._runtime.init(resource_path)
            self._initialized = True
            LOGGER.info("Native runtime initialized from %s", resource_path)

    async def load_model(
        self,
        model_path: str,
        *,
        projector_path: str = "",
        gpu_offload_percent: int = 100,
        context_size: int = 2048,
    ) -> None:
        """Load a model, unloading whatever was loaded before.

        A caller cancelled mid-load does not abort the native call; the
        engine settles into READY or ERROR once the worker thread returns.

        Raises:
            BackendUnavailable: The runtime returned a non-zero status.
        """
        await self._wait_pending()
        with self._lock:
            if self._state is not EngineState.UNLOADED:
                LOGGER.info("Unloading %s before loading %s", self._loaded_path, model_path)
                self._unload_locked()
            self._state = EngineState.LOADING
        LOGGER.info(
            "Loading local model %s (GPU: %s%%, ctx: %s)", model_path, gpu_offload_percent, context_size
        )
        future = self._run_native(
            self._runtime.load_model, model_path, projector_path, gpu_offload_percent, context_size
        )
        try:
            status = await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(partial(self._settle_load, model_path))
            raise
        except Exception as exc:
            self._settle_load(model_path, future)
            raise BackendUnavailable(f"Failed to load model: {exc}") from exc
        self._settle_load(model_path, future)
        if status != 0:
            message = LOAD_STATUS_MESSAGES.get(status, f"Unknown load error: {status}")
            raise BackendUnavailable(message, load_status=status)
        LOGGER.info("Model loaded successfully")

    async def infer_chat(self, messages_json: str, **sampling: Any) -> str:
        """Run blocking chat inference in a worker thread.

        Progress callbacks fire during the call; a final ``"complete"``
        progress event is published once the runtime returns. Cancelling
        the caller asks the runtime to stop and returns the engine to
        READY when the thread finishes.
        """
        options = {**_DEFAULT_SAMPLING, **{key: value for key, value in sampling.items() if value is not None}}
        await self._wait_pending()
        with self._lock:
            if self._state is not EngineState.READY:
                raise BackendUnavailable("No local model is loaded")
            self._state = EngineState.INFERRING
            epoch = self._unload_epoch
        future = self._run_native(
            self._runtime.infer_chat,
            messages_json,
            int(options["max_tokens"]),
            float(options["temperature"]),
            float(options["top_p"]),
            int(options["top_k"]),
            float(options["min_p"]),
            float(options["repeat_penalty"]),
        )
        try:
            result = await asyncio.shield(future)
        except asyncio.CancelledError:
            LOGGER.debug("Chat inference abandoned; cancelling native call")
            self._runtime.cancel()
            future.add_done_callback(partial(self._settle_inference, epoch))
            raise
        except Exception:
            self._settle_inference(epoch, future)
            LOGGER.exception("Exception during chat inference")
            raise
        self._settle_inference(epoch, future)
        self._publish(InferenceProgress("complete", 0, ""))
        return result

    def cancel(self) -> None:
        self._runtime.cancel()

    def unload(self) -> None:
        with self._lock:
            self._unload_locked()

    def add_listener(self, callback: ProgressCallback) -> None:
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: ProgressCallback) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _unload_locked(self) -> None:
        if self._state is EngineState.UNLOADED:
            return
        if self._state is EngineState.INFERRING:
            self._runtime.cancel()
        self._runtime.unload()
        self._state = EngineState.UNLOADED
        self._loaded_path = None
        self._unload_epoch += 1
        LOGGER.info("Model unloaded")

    def _run_native(self, func: Callable[..., Any], *args: Any) -> "asyncio.Future[Any]":
        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        self._pending = future
        return future

    async def _wait_pending(self) -> None:
        # The runtime serves one call at a time, abandoned ones included.
        pending = self._pending
        if pending is not None and not pending.done():
            LOGGER.debug("Waiting for an abandoned native call to return")
            await asyncio.wait({pending})

    def _settle_load(self, model_path: str, future: "asyncio.Future[Any]") -> None:
        failure = _failure_of(future)
        with self._lock:
            if self._state is not EngineState.LOADING:
                return
            if failure is None and future.result() == 0:
                self._state = EngineState.READY
                self._loaded_path = model_path
                self._error = None
                return
        if failure is not None:
            self._fail(str(failure) or "Load failed")
        else:
            status = future.result()
            self._fail(LOAD_STATUS_MESSAGES.get(status, f"Unknown load error: {status}"))

    def _settle_inference(self, epoch: int, future: "asyncio.Future[Any]") -> None:
        failure = _failure_of(future)
        with self._lock:
            if self._state is not EngineState.INFERRING or self._unload_epoch != epoch:
                return
            if failure is None:
                self._state = EngineState.READY
                return
        self._fail(str(failure) or "Inference failed")

    def _fail(self, message: str) -> None:
        with self._lock:
            self._state = EngineState.ERROR
            self._error = message
        LOGGER.error("Local engine error: %s", message)

    def _on_native_progress(self, phase: str, tokens_generated: int, token_text: str) -> None:
        self._publish(InferenceProgress(phase, tokens_generated, token_text or ""))

    def _publish(self, progress: InferenceProgress) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(progress.phase, progress.tokens_generated, progress.token_text)


def messages_to_json(messages: Sequence[Mapping[str, Any]]) -> str:
    """Flatten chat messages into the ``[{role, content}]`` JSON the runtime reads."""

    flattened = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, list):
            pieces = []
            for part in content:
                if part.get("type") == "text":
                    pieces.append(part.get("text", ""))
                elif part.get("type") == "image_url":
                    pieces.append("[image]")
            content = "\n".join(pieces)
        flattened.append({"role": message.get("role", "user"), "content": content or ""})
    return json.dumps(flattened, ensure_ascii=False)


_DONE = object()


class LocalBackend:
    """Serves one local model through the shared :class:`LlmEngine`.

    Tool definitions are accepted and ignored; the native runtime has no
    function-calling support.
    """

    def __init__(
        self,
        engine: LlmEngine,
        store: LocalModelStore,
        model_id: str,
        *,
        resource_path: str = "",
    ) -> None:
        self._engine = engine
        self._store = store
        self._model_id = model_id
        self._resource_path = resource_path
        self._cancel_requested = False

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def context_window(self) -> int | None:
        model = self._store.get(self._model_id)
        return model.context_window_size if model is not None else None

    async def ensure_model_loaded(self) -> None:
        model = self._store.require(self._model_id)
        model_path = str(self._store.model_path(model))
        if self._engine.is_ready() and self._engine.loaded_path == model_path:
            return
        validate_gguf(model_path)
        projector = self._store.projector_path(model)
        if projector is not None:
            validate_gguf(projector)
        self._engine.init(self._resource_path)
        await self._engine.load_model(
            model_path,
            projector_path=str(projector) if projector is not None else "",
            gpu_offload_percent=self._store.gpu_offload_percent,
            context_size=model.context_window_size,
        )

    async def stream_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        params: GenerationParams,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self._cancel_requested = False
        try:
            await self.ensure_model_loaded()
        except PocketLLMError as exc:
            yield Error(exc.message, exc.to_dict())
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def on_progress(phase: str, tokens: int, text: str) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, InferenceProgress(phase, tokens, text))

        self._engine.add_listener(on_progress)
        epoch = self._engine.unload_epoch
        task = asyncio.ensure_future(
            self._engine.infer_chat(
                messages_to_json(messages),
                max_tokens=params.max_tokens,
                temperature=params.temperature,
                top_p=params.top_p,
                top_k=params.top_k,
                min_p=params.min_p,
                repeat_penalty=params.repeat_penalty,
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))

        accumulator = StreamAccumulator()
        tokens_generated = 0
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if item.phase == "complete":
                    # The runtime result stays authoritative for the final text.
                    LOGGER.debug("Local inference reported completion after %d token(s)", item.tokens_generated)
                    tokens_generated = max(tokens_generated, item.tokens_generated)
                    await asyncio.wait({task})
                    break
                tokens_generated = max(tokens_generated, item.tokens_generated)
                text = item.token_text
                if not text:
                    continue
                if text.startswith(_ERROR_PREFIX):
                    self._engine.cancel()
                    yield Error(text[len(_ERROR_PREFIX):].strip() or "Local inference failed")
                    return
                accumulator.add_content(text)
                yield Delta(content=text)
        finally:
            self._engine.remove_listener(on_progress)
            if not task.done():
                self._engine.cancel()
                task.add_done_callback(_consume_result)

        if self._cancel_requested:
            return
        if self._engine.unload_epoch != epoch:
            yield Error("The local model was unloaded during generation")
            return
        try:
            final = task.result()
        except PocketLLMError as exc:
            yield Error(exc.message, exc.to_dict())
            return
        except Exception as exc:
            yield Error(f"Local inference failed: {exc}")
            return
        if final.startswith(_ERROR_PREFIX):
            yield Error(final[len(_ERROR_PREFIX):].strip() or "Local inference failed")
            return
        accumulator.set_finish_reason("stop")
        if tokens_generated:
            accumulator.set_usage(TokenUsage(completion_tokens=tokens_generated))
        yield Complete(result=accumulator.result(content_override=final))

    async def complete(self, messages: Sequence[Mapping[str, Any]], params: GenerationParams) -> str:
        await self.ensure_model_loaded()
        final = await self._engine.infer_chat(
            messages_to_json(messages),
            max_tokens=params.max_tokens,
            temperature=params.temperature,
            top_p=params.top_p,
        )
        if final.startswith(_ERROR_PREFIX):
            raise BackendUnavailable(final[len(_ERROR_PREFIX):].strip() or "Local inference failed")
        visible, _ = split_thinking(final)
        if not visible.strip():
            raise BackendUnavailable("No response generated. Try again or rephrase your message.")
        return visible.strip()

    def cancel(self) -> None:
        self._cancel_requested = True
        self._engine.cancel()

    async def aclose(self) -> None:
        # The engine is shared process-wide; unloading is the owner's call.
        return None


def _consume_result(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.debug("Abandoned local inference finished with %s", exc)


def _failure_of(future: "asyncio.Future[Any]") -> BaseException | None:
    if future.cancelled():
        return asyncio.CancelledError()
    return future.exception()
