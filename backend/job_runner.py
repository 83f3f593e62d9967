"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" (and optionally "count") for admin toast.
"""
import logging

logger = logging.getLogger(__name__)


async def run_deadline_sweep():
    try:
        from services.engine import get_engine
        result = await get_engine().reminders.run_deadline_sweep()
        logger.info(
            f"Deadline sweep completed: {result['fired']} reminders fired "
            f"({result['checked']} orders checked, {result['errors']} errors)"
        )
        return {"message": f"Deadline reminders sent: {result['fired']}", "count": result["fired"], **result}
    except Exception as e:
        logger.error(f"Deadline sweep job failed: {e}")
        raise


async def run_unread_sweep():
    try:
        from services.engine import get_engine
        result = await get_engine().reminders.run_unread_sweep()
        logger.info(
            f"Unread sweep completed: {result['fired']} reminders, {result['escalated']} escalations "
            f"({result['checked']} notifications checked, {result['errors']} errors)"
        )
        return {
            "message": f"Unread reminders sent: {result['fired']}, escalated: {result['escalated']}",
            "count": result["fired"],
            **result,
        }
    except Exception as e:
        logger.error(f"Unread sweep job failed: {e}")
        raise


async def run_side_effect_retry_worker():
    """Retry captured mail/emit side effects whose backoff has elapsed."""
    try:
        from services.engine import get_engine
        result = await get_engine().side_effects.process_retry_queue()
        if result["retried"]:
            logger.info(
                f"Side effect retry worker: {result['retried']} retried, "
                f"{result['succeeded']} succeeded, {result['dead']} dead"
            )
        return {"message": f"Side effects retried: {result['retried']}", "count": result["retried"], **result}
    except Exception as e:
        logger.error(f"Side effect retry worker failed: {e}")
        raise


JOB_RUNNERS = {
    "deadline_sweep": run_deadline_sweep,
    "unread_sweep": run_unread_sweep,
    "side_effect_retry_worker": run_side_effect_retry_worker,
}
