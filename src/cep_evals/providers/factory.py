"""Factory for the evidence judge LLM.

Dispatches on LLMProvider enum values to instantiate the matching
DeepEvalBaseLLM wrapper.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from cep_evals.config import LLMProvider
from cep_evals.errors import ConfigurationError

if TYPE_CHECKING:
    from deepeval.models import DeepEvalBaseLLM

    from cep_evals.config import EvalConfig


def create_judge_llm(config: EvalConfig) -> DeepEvalBaseLLM:
    """Create the judge LLM for the configured provider.

    Args:
        config: Evaluation configuration.

    Returns:
        A DeepEvalBaseLLM instance exposing ``a_generate``.

    Raises:
        ConfigurationError: If the provider is unsupported or missing a
            required setting.
    """
    provider = config.judge_provider

    if provider in (LLMProvider.VLLM, LLMProvider.AZURE) and not config.judge_base_url:
        raise ConfigurationError(
            f"{provider.value} judge provider requires judge_base_url to be set. "
            "Set CEP_EVAL_JUDGE_BASE_URL to the endpoint (e.g. http://localhost:8000/v1)."
        )

    if provider in (LLMProvider.OPENAI, LLMProvider.VLLM, LLMProvider.AZURE):
        from cep_evals.providers.judge import OpenAIJudgeLLM

        return OpenAIJudgeLLM(
            model_name=config.judge_model,
            api_key=config.judge_api_key,
            base_url=config.judge_base_url,
            json_mode=provider == LLMProvider.OPENAI,
        )

    if provider in (LLMProvider.ANTHROPIC, LLMProvider.ANTHROPIC_VERTEX):
        from cep_evals.providers.judge import AnthropicJudgeLLM

        return AnthropicJudgeLLM(
            model_name=config.judge_model,
            api_key=config.judge_api_key,
            vertex_project_id=config.vertex_project_id if provider == LLMProvider.ANTHROPIC_VERTEX else None,
            vertex_location=config.vertex_location,
        )

    if provider in (LLMProvider.GOOGLE_GENAI, LLMProvider.GOOGLE_VERTEX):
        from cep_evals.providers.judge import GoogleJudgeLLM

        return GoogleJudgeLLM(
            model_name=config.judge_model,
            api_key=config.judge_api_key,
            vertex_project_id=config.vertex_project_id,
            vertex_location=config.vertex_location,
            use_vertex=provider == LLMProvider.GOOGLE_VERTEX,
        )

    raise ConfigurationError(f"Unsupported judge LLM provider: {provider}")
