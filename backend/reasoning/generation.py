"""
Generation Capability: the metered, non-deterministic model call.

The engine orchestrates generation but does not implement it. The contract
is a single async operation:

    invoke(prompt_payload, expected_output_shape) -> RawOutput

`expected_output_shape` is a JSON-schema-like description the capability
uses to shape its structured reply.

bind_generation() turns a capability plus a caller-owned prompt builder
into a task executor (context -> RawOutput).

Usage:
    async with OllamaGenerator() as llm:
        executor = bind_generation(llm, build_prompt, SCAN_SHAPE)
        result = await execute_reasoning(ReasoningTask("scan", executor, context))
"""
import asyncio
import copy
import json
import logging
import os
import re
import time
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp

from reasoning.errors import GenerationFailure
from reasoning.types import TaskExecutor

logger = logging.getLogger(__name__)

# Configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
REQUEST_TIMEOUT = int(os.getenv("OLLAMA_TIMEOUT", "120"))

# (prompt_payload, expected_output_shape) -> RawOutput
GenerationCapability = Callable[[Any, Optional[dict]], Awaitable[Any]]

# context -> prompt_payload
PromptBuilder = Callable[[Mapping[str, Any]], Any]


def bind_generation(
    capability: Any,
    build_prompt: PromptBuilder,
    expected_shape: Optional[dict] = None,
) -> TaskExecutor:
    """
    Bind a generation capability to a prompt builder.

    Args:
        capability: Object with an async `invoke`, or an async callable
        build_prompt: Turns a task context into the prompt payload
        expected_shape: Structural description passed through to the capability

    Returns:
        Task executor suitable for ReasoningTask.executor
    """
    invoke = getattr(capability, "invoke", capability)

    async def executor(context: Mapping[str, Any]) -> Any:
        return await invoke(build_prompt(context), expected_shape)

    return executor


# ═══════════════════════════════════════════════════════════════════════════════
# RESPONSE PARSING
# ═══════════════════════════════════════════════════════════════════════════════

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)


def parse_json_output(content: str) -> Any:
    """
    Parse a model's JSON reply.

    Strips reasoning tags and markdown code fences first.

    Raises:
        GenerationFailure: if the reply is not valid JSON
    """
    text = _THINK_BLOCK.sub("", content or "").strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise GenerationFailure(
            f"Generation returned invalid JSON: {e}",
            phase="executing",
            cause_type="JSONDecodeError",
        ) from e


# ═══════════════════════════════════════════════════════════════════════════════
# OLLAMA CAPABILITY
# ═══════════════════════════════════════════════════════════════════════════════

class OllamaGenerator:
    """
    Generation capability backed by an Ollama server.

    The expected output shape is sent as Ollama's structured `format`, so
    the reply is constrained to JSON of that shape. Model and endpoint come
    from configuration; this class makes no model choices of its own.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        model: str = OLLAMA_MODEL,
        timeout: int = REQUEST_TIMEOUT,
        temperature: float = 0.2,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    def build_payload(self, prompt_payload: Any, expected_shape: Optional[dict]) -> dict:
        """Build the /api/generate request body."""
        if isinstance(prompt_payload, Mapping):
            prompt = prompt_payload.get("prompt", "")
            system = prompt_payload.get("system")
        else:
            prompt, system = str(prompt_payload), None

        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": expected_shape or "json",
            "options": {"temperature": self.temperature},
        }
        if system:
            payload["system"] = system
        return payload

    async def invoke(self, prompt_payload: Any, expected_shape: Optional[dict] = None) -> Any:
        """
        Run one generation call and return the parsed JSON reply.

        Raises:
            GenerationFailure: on HTTP errors, timeouts or unparseable replies
        """
        session = await self._get_session()
        url = f"{self.base_url}/api/generate"
        payload = self.build_payload(prompt_payload, expected_shape)
        start_time = time.time()

        try:
            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    raise GenerationFailure(
                        f"HTTP {resp.status}: {error_text[:200]}",
                        phase="executing",
                        cause_type="HTTPError",
                    )
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise GenerationFailure(
                f"Ollama request failed: {e}",
                phase="executing",
                cause_type=type(e).__name__,
            ) from e
        except TimeoutError as e:
            raise GenerationFailure(
                f"Ollama request timed out after {self.timeout}s",
                phase="executing",
                cause_type="TimeoutError",
            ) from e

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Ollama generation: model={self.model} latency={latency_ms}ms "
            f"tokens={data.get('eval_count', 0)}"
        )
        return parse_json_output(data.get("response", ""))

    async def __call__(self, prompt_payload: Any, expected_shape: Optional[dict] = None) -> Any:
        return await self.invoke(prompt_payload, expected_shape)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "OllamaGenerator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


# ═══════════════════════════════════════════════════════════════════════════════
# SCRIPTED GENERATOR FOR TESTING
# ═══════════════════════════════════════════════════════════════════════════════

class ScriptedGenerator:
    """
    Deterministic generation capability for tests.

    Replies are consumed in order; an exception instance in the script is
    raised instead of returned, and a callable is called with the request.
    Usable both as a capability and directly as a task executor.
    """

    def __init__(
        self,
        responses: Optional[list] = None,
        default: Any = None,
        delay: float = 0.0,
    ):
        self._responses = list(responses or [])
        self.default = default
        self.delay = delay
        self.calls: list[tuple[Any, Optional[dict]]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def invoke(self, prompt_payload: Any, expected_shape: Optional[dict] = None) -> Any:
        self.calls.append((prompt_payload, expected_shape))
        if self.delay:
            await asyncio.sleep(self.delay)

        response = self._responses.pop(0) if self._responses else self.default
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(prompt_payload, expected_shape)
        return copy.deepcopy(response)

    async def __call__(self, prompt_payload: Any, expected_shape: Optional[dict] = None) -> Any:
        return await self.invoke(prompt_payload, expected_shape)

    def add_response(self, response: Any) -> None:
        """Append a reply to the script."""
        self._responses.append(response)
