"""
Bulk decisions.

Applies one action to many workflows. Each item is handled on its own:
a failure or a hang on one workflow never blocks or hides the others.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from clearance.config import settings
from clearance.exceptions import WorkflowError
from clearance.models.workflow import Workflow, utcnow

logger = logging.getLogger(__name__)


@dataclass
class BulkItemResult:
    workflow_id: UUID
    success: bool
    workflow_number: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": str(self.workflow_id),
            "workflow_number": self.workflow_number,
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class BulkResult:
    action: str
    performed_by: str
    performed_at: datetime = field(default_factory=utcnow)
    results: list[BulkItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return self.total - self.success_count

    @property
    def success_rate(self) -> float:
        if not self.results:
            return 0.0
        return self.success_count / self.total * 100

    @property
    def errors(self) -> list[BulkItemResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total,
            "success_count": self.success_count,
            "failed_count": self.failure_count,
            "results": [r.to_dict() for r in self.results],
            "errors": [r.to_dict() for r in self.errors],
            "summary": {
                "action": self.action,
                "performed_by": self.performed_by,
                "performed_at": self.performed_at.isoformat(),
                "success_rate": round(self.success_rate, 2),
            },
        }


class BulkActionCoordinator:
    """
    Runs a per-workflow handler over many workflows with bounded
    concurrency and a per-item timeout.

    Results come back in input order, one per input id (duplicates
    included).
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        item_timeout: Optional[float] = None,
    ):
        self.max_concurrency = max_concurrency or settings.bulk_max_concurrency
        self.item_timeout = item_timeout or settings.bulk_item_timeout_seconds

    async def run(
        self,
        action: str,
        workflow_ids: list[UUID],
        handler: Callable[[UUID], Awaitable[Workflow]],
        performed_by: str,
        describe: Optional[Callable[[UUID], Optional[str]]] = None,
    ) -> BulkResult:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        result = BulkResult(action=action, performed_by=performed_by)

        async def process_one(workflow_id: UUID) -> BulkItemResult:
            async with semaphore:
                number = describe(workflow_id) if describe else None
                try:
                    workflow = await asyncio.wait_for(handler(workflow_id), timeout=self.item_timeout)
                except asyncio.TimeoutError:
                    logger.error(f"Bulk {action} timed out for {workflow_id} after {self.item_timeout}s")
                    return BulkItemResult(
                        workflow_id=workflow_id,
                        success=False,
                        workflow_number=number,
                        error=f"Timed out after {self.item_timeout}s",
                        error_type="TimeoutError",
                    )
                except WorkflowError as e:
                    logger.error(f"Bulk {action} failed for {workflow_id}: {e}")
                    return BulkItemResult(
                        workflow_id=workflow_id,
                        success=False,
                        workflow_number=number,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                except Exception as e:
                    logger.exception(f"Bulk {action} crashed for {workflow_id}: {e}")
                    return BulkItemResult(
                        workflow_id=workflow_id,
                        success=False,
                        workflow_number=number,
                        error="Unexpected error",
                        error_type=type(e).__name__,
                    )
                return BulkItemResult(
                    workflow_id=workflow_id,
                    success=True,
                    workflow_number=workflow.workflow_number,
                    message=f"{action} applied; now {workflow.status.value}/{workflow.current_stage.value}",
                )

        result.results = list(await asyncio.gather(*(process_one(wid) for wid in workflow_ids)))
        logger.info(
            f"Bulk {action} by {performed_by}: {result.success_count}/{result.total} succeeded"
        )
        return result
