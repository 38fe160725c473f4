"""In-memory job and progress registry"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from deskmarket.core.marketplace.exceptions import JobNotFoundError
from deskmarket.core.marketplace.models import (
    InstallationProgress,
    InstallationStatus,
    JobInfo,
    JobStatus,
    JobType,
)
from deskmarket.core.time import utc_now

logger = logging.getLogger(__name__)

INSTALL_STEPS = 7
UNINSTALL_STEPS = 2

CANCELLED_MESSAGE = "Installation cancelled by user"

DEFAULT_TERMINAL_TTL = 3600.0
DEFAULT_ACTIVE_TTL = 86400.0


def compute_percent(step: int, total_steps: int, sub_progress: float = 0.0) -> int:
    """
    Overall percentage for a 1-based step and a 0..1 fraction within it

    Example:
        >>> compute_percent(1, 7, 0.5)
        7
        >>> compute_percent(7, 7, 1.0)
        100
    """
    sub_progress = min(max(sub_progress, 0.0), 1.0)
    # (step - 1 + sub) * (100 / total), grouped to avoid float drift at 100
    percent = math.floor((step - 1 + sub_progress) * 100 / total_steps)
    return max(0, min(percent, 100))


def new_session_id() -> str:
    return uuid.uuid4().hex


class JobRegistry:
    """
    Jobs and their progress records, keyed by session id

    Only touched from the event loop thread. Progress never goes backwards,
    and a job that reached a terminal status is never changed again.
    """

    def __init__(
        self,
        terminal_ttl: float = DEFAULT_TERMINAL_TTL,
        active_ttl: float = DEFAULT_ACTIVE_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.terminal_ttl = terminal_ttl
        self.active_ttl = active_ttl
        self.clock = clock
        self._jobs: Dict[str, JobInfo] = {}
        self._progress: Dict[str, InstallationProgress] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._jobs

    def create_job(
        self,
        job_type: JobType,
        app_id: Optional[str] = None,
        app_name: Optional[str] = None,
        url: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> JobInfo:
        """Register a new pending job with a fresh session id"""
        session_id = new_session_id()
        while session_id in self._jobs:
            session_id = new_session_id()

        now = self.clock()
        total_steps = UNINSTALL_STEPS if job_type == JobType.UNINSTALL else INSTALL_STEPS
        noun = "Uninstall" if job_type == JobType.UNINSTALL else job_type.value.capitalize()

        progress = InstallationProgress(
            session_id=session_id,
            total_steps=total_steps,
            start_time=now,
            app_id=app_id,
            app_name=app_name,
            message=f"{noun} queued",
        )
        job = JobInfo(
            session_id=session_id,
            type=job_type,
            created_at=now,
            app_id=app_id,
            app_name=app_name,
            url=url,
            user_id=user_id,
            progress=progress,
        )
        self._jobs[session_id] = job
        self._progress[session_id] = progress

        logger.info(f"Created {job_type.value} job {session_id}" + (f" for {app_id}" if app_id else ""))
        return job

    def get_job(self, session_id: str) -> Optional[JobInfo]:
        return self._jobs.get(session_id)

    def get_progress(self, session_id: str) -> Optional[InstallationProgress]:
        return self._progress.get(session_id)

    def require_job(self, session_id: str) -> JobInfo:
        job = self._jobs.get(session_id)
        if job is None:
            raise JobNotFoundError(session_id)
        return job

    def is_cancelled(self, session_id: str) -> bool:
        job = self._jobs.get(session_id)
        return job is not None and job.status == JobStatus.CANCELLED

    def start_job(self, session_id: str) -> None:
        job = self.require_job(session_id)
        if job.status != JobStatus.PENDING:
            return
        job.status = JobStatus.RUNNING
        job.started_at = self.clock()

    def update_progress(
        self,
        session_id: str,
        step: int,
        status: Optional[InstallationStatus] = None,
        sub_progress: float = 0.0,
        current_step: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        app_id: Optional[str] = None,
        app_name: Optional[str] = None,
    ) -> None:
        """
        Record progress for a running job

        Updates to terminal jobs are ignored; the percentage is monotonic.
        """
        job = self._jobs.get(session_id)
        if job is None or job.status.is_terminal:
            return

        progress = job.progress
        percent = compute_percent(step, progress.total_steps, sub_progress)
        progress.progress = max(progress.progress, percent)

        if status is not None:
            progress.status = status
        if current_step is not None:
            progress.current_step = current_step
        if message is not None:
            progress.message = message
        if details:
            progress.details.update(details)
        if app_id is not None:
            progress.app_id = job.app_id = app_id
        if app_name is not None:
            progress.app_name = job.app_name = app_name

    def complete_job(
        self,
        session_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        """
        Move a job to a terminal status

        Returns:
            False if the job was already terminal (nothing changed)
        """
        if not status.is_terminal:
            raise ValueError(f"Not a terminal status: {status.value}")

        job = self.require_job(session_id)
        if job.status.is_terminal:
            return False

        job.status = status
        job.completed_at = self.clock()
        progress = job.progress

        if status == JobStatus.COMPLETED:
            progress.status = InstallationStatus.COMPLETED
            progress.progress = 100
            progress.current_step = "Completed"
            progress.message = message or "Completed successfully"
        else:
            if status == JobStatus.CANCELLED:
                error = CANCELLED_MESSAGE
            progress.status = InstallationStatus.FAILED
            progress.error = error or "Unknown error"
            progress.message = progress.error

        logger.info(f"Job {session_id} {status.value}" + (f": {progress.error}" if progress.error else ""))
        return True

    def cancel_job(self, session_id: str) -> JobInfo:
        """
        Cancel a non-terminal job

        Raises:
            JobNotFoundError: Unknown session id
            ValueError: If the job already finished
        """
        job = self.require_job(session_id)
        if job.status.is_terminal:
            raise ValueError(f"Cannot cancel job in status: {job.status.value}")
        self.complete_job(session_id, JobStatus.CANCELLED)
        return job

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        user_id: Optional[str] = None,
    ) -> Tuple[List[JobInfo], Dict[str, int]]:
        """
        Jobs matching the filters, newest first, plus counts by status

        The counts cover every job in the registry, not just the filtered ones.
        """
        jobs = [
            job for job in self._jobs.values()
            if (status is None or job.status == status)
            and (job_type is None or job.type == job_type)
            and (user_id is None or job.user_id == user_id)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)

        stats = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)

        return jobs, stats

    def remove(self, session_id: str) -> None:
        self._jobs.pop(session_id, None)
        self._progress.pop(session_id, None)

    def gc_tick(self) -> int:
        """
        Purge expired jobs

        Terminal jobs expire terminal_ttl seconds after completion, others
        active_ttl seconds after creation.

        Returns:
            Number of jobs removed
        """
        now = self.clock()
        terminal_cutoff = now - timedelta(seconds=self.terminal_ttl)
        active_cutoff = now - timedelta(seconds=self.active_ttl)

        expired = []
        for session_id, job in self._jobs.items():
            if job.status.is_terminal:
                reference = job.completed_at or job.created_at
                if reference < terminal_cutoff:
                    expired.append(session_id)
            elif job.created_at < active_cutoff:
                expired.append(session_id)

        for session_id in expired:
            self.remove(session_id)

        if expired:
            logger.info(f"Job GC removed {len(expired)} expired jobs")
        return len(expired)
