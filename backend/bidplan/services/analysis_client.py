"""
AI plan analysis client.
Single entry point for takeoff analysis calls. The payload that comes back is
stored verbatim as the plan's analysis record; nothing here judges its content.

Primary model: LLM_PRIMARY_MODEL (vision-capable)
Fallback:      LLM_FALLBACK_MODEL
Plans with more pages than ANALYSIS_MAX_INLINE_PAGES go to the Celery batch channel.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import litellm

from bidplan.config import ANALYSIS_MAX_INLINE_PAGES, LLM_FALLBACK_MODEL, LLM_PRIMARY_MODEL

logger = logging.getLogger("bidplan-analysis")

# Suppress litellm verbose logging
litellm.set_verbose = False

TAKEOFF_PROMPT = (
    "You are a construction estimator performing a quantity takeoff from plan sheets. "
    "List every measurable item you can identify. Respond with JSON only, shaped as "
    '{"items": [{"name", "description", "category", "subcategory", "quantity", "unit", '
    '"unit_cost", "location", "page_number", "notes"}], "summary": {...}}. '
    "Use null when a value cannot be read from the drawings."
)


class AnalysisError(RuntimeError):
    """Both models failed to analyse the plan."""


@dataclass
class AnalysisOutcome:
    status: str                     # completed | too_large | queued
    plan_id: str
    payload: Any = None
    model: Optional[str] = None
    task_id: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "plan_id": self.plan_id,
            "model": self.model,
            "task_id": self.task_id,
            "message": self.message,
        }


def _vision_messages(images_base64: list[str], prompt: str) -> list[dict]:
    content = [
        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{img}"}}
        for img in images_base64
    ]
    content.append({"type": "text", "text": prompt})
    return [{"role": "user", "content": content}]


async def complete_with_vision(images_base64: list[str], prompt: str,
                               temperature: float = 0.1) -> tuple[str, str]:
    """Returns (content, model used). Falls back to the secondary model on any primary failure."""
    messages = _vision_messages(images_base64, prompt)
    kwargs = {"messages": messages, "temperature": temperature, "max_tokens": 8192}

    try:
        response = await litellm.acompletion(
            model=LLM_PRIMARY_MODEL, response_format={"type": "json_object"}, **kwargs
        )
        return response.choices[0].message.content, LLM_PRIMARY_MODEL
    except litellm.RateLimitError:
        logger.warning(f"{LLM_PRIMARY_MODEL} rate limit hit, falling back to {LLM_FALLBACK_MODEL}")
    except litellm.AuthenticationError:
        logger.warning(f"{LLM_PRIMARY_MODEL} auth error, falling back to {LLM_FALLBACK_MODEL}")
    except Exception as e:
        logger.warning(f"{LLM_PRIMARY_MODEL} error ({type(e).__name__}: {e}), falling back to {LLM_FALLBACK_MODEL}")

    try:
        response = await litellm.acompletion(model=LLM_FALLBACK_MODEL, **kwargs)
        return response.choices[0].message.content, LLM_FALLBACK_MODEL
    except Exception as e:
        logger.error(f"Both analysis models failed. Last error: {e}")
        raise AnalysisError(f"All analysis providers failed. Last error: {e}") from e


def decode_payload(content: Optional[str]) -> Any:
    """JSON when the model returned JSON, otherwise the raw text (the aggregator copes with both)."""
    if not content:
        return None
    try:
        return json.loads(content)
    except ValueError:
        logger.warning("Analysis response was not valid JSON; storing raw text")
        return content


async def analyze_plan(plan_id: str, page_images: list[str]) -> AnalysisOutcome:
    if len(page_images) > ANALYSIS_MAX_INLINE_PAGES:
        return AnalysisOutcome(
            status="too_large",
            plan_id=plan_id,
            message=f"{len(page_images)} pages exceeds the inline limit of {ANALYSIS_MAX_INLINE_PAGES}; use batch analysis",
        )
    content, model = await complete_with_vision(page_images, TAKEOFF_PROMPT)
    logger.info(f"Analysed plan {plan_id} ({len(page_images)} pages) with {model}")
    return AnalysisOutcome(status="completed", plan_id=plan_id, payload=decode_payload(content), model=model)


def submit_batch(plan_id: str, page_images: list[str], job_id: Optional[str] = None) -> AnalysisOutcome:
    from bidplan.workers.tasks import run_plan_analysis

    result = run_plan_analysis.delay(plan_id, page_images, job_id)
    logger.info(f"Queued batch analysis for plan {plan_id}: task {result.id}")
    return AnalysisOutcome(status="queued", plan_id=plan_id, task_id=result.id,
                           message="Analysis queued; results will appear when the batch completes")
