"""Judge LLM providers for the evidence re-scorer."""

from cep_evals.providers.factory import create_judge_llm

__all__ = ["create_judge_llm"]
