import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Aggregate outcome of a sweep; one failed item never stops the rest"""
    job: str
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


async def process_each(
    db: Session,
    job: str,
    item_ids: Iterable[str],
    handler: Callable[[str], Awaitable[bool]]
) -> BatchResult:
    """
    Run `handler` for every id, isolating failures.

    The handler returns True when it changed something and False when the item
    no longer qualified (already handled by a concurrent run). Any exception
    rolls back that item's work and is recorded against its id.
    """
    result = BatchResult(job=job)

    for item_id in item_ids:
        result.processed += 1
        try:
            if await handler(item_id):
                result.succeeded += 1
            else:
                result.skipped += 1
        except Exception as e:
            db.rollback()
            result.failed += 1
            result.errors.append({"id": item_id, "error": str(e)})
            logger.error(
                f"{job} failed for {item_id}: {e}",
                exc_info=True,
                extra={"job": job, "item_id": item_id}
            )

    logger.info(
        f"{job} complete: {result.succeeded} succeeded, {result.skipped} skipped, {result.failed} failed",
        extra={"job": job}
    )
    return result
