"""DeepEvalBaseLLM subclasses for the evidence judge across providers.

Each wrapper only needs plain text generation. The judge prompt asks for
a JSON document, so every provider is called with deterministic settings
and, where the API supports it, a JSON response mode.
"""

from __future__ import annotations

import asyncio
from typing import Any

from deepeval.models import DeepEvalBaseLLM

DEFAULT_MAX_TOKENS = 4096


class _AsyncJudgeLLM(DeepEvalBaseLLM):
    """Shared plumbing: sync ``generate`` delegates to ``a_generate``."""

    _model_name: str
    _client: Any

    def get_model_name(self) -> str:
        return self._model_name

    def load_model(self) -> Any:
        return self._client

    async def a_generate(self, prompt: str, **kwargs: Any) -> str:
        raise NotImplementedError

    def generate(self, prompt: str, **kwargs: Any) -> str:
        return asyncio.run(self.a_generate(prompt, **kwargs))


class OpenAIJudgeLLM(_AsyncJudgeLLM):
    """Judge backed by an OpenAI-compatible endpoint (OpenAI, vLLM, Azure)."""

    def __init__(
        self,
        model_name: str,
        api_key: str,
        base_url: str | None = None,
        json_mode: bool = True,
    ) -> None:
        self._model_name = model_name
        self._json_mode = json_mode
        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def a_generate(self, prompt: str, **kwargs: Any) -> str:
        if self._json_mode:
            kwargs.setdefault("response_format", {"type": "json_object"})
        response = await self._client.chat.completions.create(
            model=self._model_name,
            messages=[{"role": "user", "content": prompt}],
            temperature=0,
            **kwargs,
        )
        return response.choices[0].message.content or ""


class AnthropicJudgeLLM(_AsyncJudgeLLM):
    """Judge backed by Anthropic Claude, directly or through Vertex AI."""

    def __init__(
        self,
        model_name: str,
        api_key: str = "",
        vertex_project_id: str | None = None,
        vertex_location: str = "us-central1",
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self._model_name = model_name
        self._max_tokens = max_tokens
        from anthropic import AsyncAnthropic, AsyncAnthropicVertex

        if vertex_project_id:
            self._client: AsyncAnthropic | AsyncAnthropicVertex = AsyncAnthropicVertex(
                project_id=vertex_project_id,
                region=vertex_location,
            )
        else:
            self._client = AsyncAnthropic(api_key=api_key)

    async def a_generate(self, prompt: str, **kwargs: Any) -> str:
        response = await self._client.messages.create(
            model=self._model_name,
            max_tokens=self._max_tokens,
            temperature=0,
            messages=[{"role": "user", "content": prompt}],
            **kwargs,
        )
        return "\n".join(block.text for block in response.content if block.type == "text")


class GoogleJudgeLLM(_AsyncJudgeLLM):
    """Judge backed by Google Gemini.

    With ``use_vertex`` the client talks to Vertex AI, in Express mode when
    an API key is given and with application default credentials when only
    a project is given.
    """

    def __init__(
        self,
        model_name: str,
        api_key: str = "",
        vertex_project_id: str | None = None,
        vertex_location: str = "us-central1",
        use_vertex: bool = False,
    ) -> None:
        self._model_name = model_name
        from google import genai

        if use_vertex:
            if api_key:
                self._client = genai.Client(vertexai=True, api_key=api_key)
            elif vertex_project_id:
                self._client = genai.Client(
                    vertexai=True,
                    project=vertex_project_id,
                    location=vertex_location,
                )
            else:
                raise ValueError("Vertex AI judge requires an API key or vertex_project_id")
        else:
            self._client = genai.Client(api_key=api_key)

    async def a_generate(self, prompt: str, **kwargs: Any) -> str:
        response = await self._client.aio.models.generate_content(
            model=self._model_name,
            contents=prompt,
            config={"temperature": 0, "response_mime_type": "application/json"},
        )
        return response.text or ""
