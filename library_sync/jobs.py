from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from library_sync.events import JOB_PROGRESS_EVENT, EventNotifier
from library_sync.models import Job, JobState, Provider, utcnow_iso

logger = logging.getLogger(__name__)


class JobRegistry:
    """Tracks lookup jobs and broadcasts their progress.

    Terminal jobs linger for ``retention_seconds`` so the UI can show them
    finishing, then they are dropped. Child jobs advance their parent's
    counters as they settle.
    """

    def __init__(self, notifier: EventNotifier, retention_seconds: float = 10.0) -> None:
        self.notifier = notifier
        self.retention_seconds = retention_seconds
        self._jobs: Dict[str, Job] = {}
        self._failed_children: Dict[str, int] = {}

    def create(
        self,
        label: str,
        *,
        provider: Optional[Provider] = None,
        track_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        generation: int = 0,
        total: Optional[int] = 1,
        state: JobState = JobState.QUEUED,
        message: Optional[str] = None,
    ) -> Job:
        job = Job(
            id=uuid.uuid4().hex,
            label=label,
            state=state,
            total=total,
            message=message,
            provider=provider,
            track_id=track_id,
            parent_id=parent_id,
            generation=generation,
        )
        self._jobs[job.id] = job
        self._publish(job)
        if job.state.terminal:
            self._schedule_removal(job.id)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list(self) -> List[Job]:
        return list(self._jobs.values())

    def update(
        self,
        job_id: str,
        *,
        state: Optional[JobState] = None,
        completed: Optional[int] = None,
        total: Optional[int] = None,
        message: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if job.state.terminal:
            logger.debug("Ignoring update for settled job %s", job_id)
            return job
        if state is not None:
            job.state = state
        if completed is not None:
            job.completed = completed
        if total is not None:
            job.total = total
        if message is not None:
            job.message = message
        if attempts is not None:
            job.attempts = attempts
        job.updated_at = utcnow_iso()
        self._publish(job)
        if job.state.terminal:
            self._schedule_removal(job.id)
            if job.parent_id:
                self._child_settled(job.parent_id, failed=job.state is JobState.ERROR)
        return job

    def finish(self, job_id: str, message: Optional[str] = None) -> Optional[Job]:
        job = self._jobs.get(job_id)
        total = job.total if job and job.total is not None else 1
        return self.update(job_id, state=JobState.COMPLETED, completed=total, message=message)

    def fail(self, job_id: str, message: str) -> Optional[Job]:
        return self.update(job_id, state=JobState.ERROR, message=message)

    def set_total(self, job_id: str, total: int) -> Optional[Job]:
        """Fix the child count of a batch job, completing it if every child already settled."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if job.completed >= total:
            failures = self._failed_children.pop(job_id, 0)
            return self.update(
                job_id,
                state=JobState.COMPLETED,
                total=total,
                message=f"{failures} failed" if failures else job.message,
            )
        return self.update(job_id, total=total)

    def _child_settled(self, parent_id: str, *, failed: bool) -> None:
        parent = self._jobs.get(parent_id)
        if parent is None or parent.state.terminal:
            return
        if failed:
            self._failed_children[parent_id] = self._failed_children.get(parent_id, 0) + 1
        completed = parent.completed + 1
        failures = self._failed_children.get(parent_id, 0)
        message = f"{failures} failed" if failures else None
        if parent.total is not None and completed >= parent.total:
            self._failed_children.pop(parent_id, None)
            self.update(parent_id, state=JobState.COMPLETED, completed=completed, message=message)
        else:
            self.update(parent_id, state=JobState.RUNNING, completed=completed, message=message)

    def _publish(self, job: Job) -> None:
        self.notifier.publish(JOB_PROGRESS_EVENT, job.to_dict())

    def _schedule_removal(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        loop.call_later(self.retention_seconds, self._jobs.pop, job_id, None)
