"""Token/cost tracking for pipeline generations."""

import logging
from uuid import UUID

from app.db.supabase_client import get_supabase

logger = logging.getLogger(__name__)

USAGE_TABLE = "llm_usage_log"

# Pricing per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4-5-20251101": (15.0, 75.0),
    "claude-sonnet-4-5-20250929": (3.0, 15.0),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-haiku-4-5-20251001": (0.80, 4.0),
}


def estimate_cost(model: str, tokens_input: int, tokens_output: int) -> float:
    """Estimate cost in USD; unknown models cost $0."""
    pricing = MODEL_PRICING.get(model)
    if not pricing:
        # Dated variants share the family price
        for key, val in MODEL_PRICING.items():
            if model.startswith(key.rsplit("-", 1)[0]):
                pricing = val
                break
    if not pricing:
        logger.warning(f"No pricing found for model '{model}', using $0")
        return 0.0

    input_rate, output_rate = pricing
    cost = (tokens_input * input_rate / 1_000_000) + (tokens_output * output_rate / 1_000_000)
    return round(cost, 6)


def log_llm_usage(
    stage: str,
    model: str,
    tokens_input: int,
    tokens_output: int,
    duration_ms: int = 0,
    project_id: UUID | str | None = None,
    provider: str = "anthropic",
) -> None:
    """Record one stage generation in the usage table. Fire-and-forget."""
    try:
        estimated_cost = estimate_cost(model, tokens_input, tokens_output)

        row = {
            "workflow": "content_pipeline",
            "chain": f"generate_{stage}",
            "model": model,
            "provider": provider,
            "tokens_input": tokens_input,
            "tokens_output": tokens_output,
            "estimated_cost_usd": estimated_cost,
            "duration_ms": duration_ms,
        }
        if project_id:
            row["project_id"] = str(project_id)

        get_supabase().table(USAGE_TABLE).insert(row).execute()

        logger.debug(
            f"LLM usage logged: {stage} model={model} "
            f"tokens={tokens_input}+{tokens_output} cost=${estimated_cost:.4f}"
        )
    except Exception as e:
        # Never fail the generation due to usage logging
        logger.error(f"Failed to log LLM usage: {e}")
