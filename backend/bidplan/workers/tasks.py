"""
Celery Tasks — batch plan analysis.

run_plan_analysis sends every page of a plan to the analysis models in
chunks of ANALYSIS_MAX_INLINE_PAGES, concatenates the returned items, and
stores the result as the plan's analysis record.
"""
import logging
import asyncio
from typing import Optional

from bidplan.config import ANALYSIS_MAX_INLINE_PAGES, TAKEOFF_ANALYSIS
from bidplan.workers.celery_app import celery_app

logger = logging.getLogger("bidplan-celery")


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def analyze_in_chunks(plan_id: str, page_images: list[str], job_id: Optional[str] = None,
                            data=None, progress=None) -> dict:
    from bidplan.services.analysis_client import analyze_plan
    from bidplan.services.data_access import SqlAlchemyDataAccess
    from bidplan.services.takeoff_aggregator import PayloadParseError, TakeoffAggregator, extract_items

    data = data if data is not None else SqlAlchemyDataAccess()
    aggregator = TakeoffAggregator(data)

    items: list[dict] = []
    models: set[str] = set()
    chunks = [
        page_images[i:i + ANALYSIS_MAX_INLINE_PAGES]
        for i in range(0, len(page_images), ANALYSIS_MAX_INLINE_PAGES)
    ]
    for n, chunk in enumerate(chunks):
        offset = n * ANALYSIS_MAX_INLINE_PAGES
        outcome = await analyze_plan(plan_id, chunk)
        models.add(outcome.model or "")
        try:
            chunk_items = extract_items(outcome.payload)
        except PayloadParseError as e:
            logger.warning(f"Plan {plan_id} chunk {n + 1}/{len(chunks)} returned an unusable payload: {e}")
            continue
        for item in chunk_items:
            # Page numbers in a chunk response are relative to the chunk
            page = item.get("page_number")
            if isinstance(page, int) and not isinstance(page, bool):
                item["page_number"] = page + offset
            items.append(item)
        if progress:
            progress(n + 1, len(chunks))

    analysis_id = await aggregator.save_analysis(
        plan_id, {"items": items}, job_id=job_id, model=", ".join(sorted(m for m in models if m)),
        summary={"pages": len(page_images), "chunks": len(chunks), "item_count": len(items)},
    )
    logger.info(f"Batch analysis stored for plan {plan_id}: {len(items)} items in {len(chunks)} chunks")
    return {"status": "completed", "plan_id": plan_id, "analysis_id": analysis_id, "item_count": len(items)}


@celery_app.task(bind=True, name="tasks.run_plan_analysis")
def run_plan_analysis(self, plan_id: str, page_images: list[str], job_id: Optional[str] = None):
    """Analyse a large plan in the background and store the payload on the plan."""
    self.update_state(state="PROGRESS", meta={"step": "Analysing plan pages", "pct": 0})

    def progress(done: int, total: int):
        self.update_state(state="PROGRESS", meta={"step": f"Analysed chunk {done}/{total}",
                                                  "pct": round(done * 100 / total)})

    try:
        return _run_async(analyze_in_chunks(plan_id, page_images, job_id, progress=progress))
    except Exception as e:
        logger.error(f"Batch analysis failed for plan {plan_id}: {e}")
        _run_async(_mark_failed(plan_id, job_id, str(e)))
        raise


async def _mark_failed(plan_id: str, job_id: Optional[str], error: str) -> None:
    from bidplan.services.data_access import DataAccessError, SqlAlchemyDataAccess

    try:
        await SqlAlchemyDataAccess().insert(TAKEOFF_ANALYSIS, {
            "plan_id": plan_id, "job_id": job_id, "status": "failed", "summary": {"error": error[:500]},
        })
    except DataAccessError as e:
        logger.error(f"Could not record failed analysis for plan {plan_id}: {e}")
