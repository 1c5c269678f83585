"""
In-memory workflow repository.

Serializes mutations per workflow with an ``asyncio.Lock`` while letting
different workflows proceed in parallel.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional
from uuid import UUID

from clearance.exceptions import ConflictError, WorkflowNotFoundError
from clearance.models.workflow import Workflow

logger = logging.getLogger(__name__)


class WorkflowStore:
    """Holds workflows and their locks."""

    def __init__(self, prefix: str = "WD"):
        self.prefix = prefix
        self._workflows: dict[UUID, Workflow] = {}
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._sequence = 0

    def next_number(self, now: datetime) -> str:
        """Human-readable workflow number, e.g. WD-2024-000042."""
        self._sequence += 1
        return f"{self.prefix}-{now.year}-{self._sequence:06d}"

    def add(self, workflow: Workflow) -> Workflow:
        if workflow.id in self._workflows:
            raise ValueError(f"Workflow already exists: {workflow.id}")
        self._workflows[workflow.id] = workflow
        self._locks[workflow.id] = asyncio.Lock()
        return workflow

    def find(self, workflow_id: UUID) -> Optional[Workflow]:
        return self._workflows.get(workflow_id)

    def get(self, workflow_id: UUID) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    def all(self) -> list[Workflow]:
        return list(self._workflows.values())

    def __len__(self) -> int:
        return len(self._workflows)

    @asynccontextmanager
    async def acquire(
        self,
        workflow_id: UUID,
        expected_version: Optional[int] = None,
    ) -> AsyncIterator[Workflow]:
        """
        Lock a workflow for mutation.

        Raises ConflictError once the lock is held if the workflow moved
        past ``expected_version`` while the caller was waiting.
        """
        self.get(workflow_id)
        async with self._locks[workflow_id]:
            workflow = self.get(workflow_id)
            if expected_version is not None and workflow.version != expected_version:
                logger.warning(
                    f"Stale write on {workflow.workflow_number}: "
                    f"expected v{expected_version}, found v{workflow.version}"
                )
                raise ConflictError(
                    f"Workflow {workflow.workflow_number} changed since it was loaded "
                    f"(expected version {expected_version}, current {workflow.version})",
                    expected_version=expected_version,
                    actual_version=workflow.version,
                )
            yield workflow
