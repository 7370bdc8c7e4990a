"""Background research for assignments.

Status lifecycle::

    in_progress -> completed | failed
    failed      -> in_progress      (retry)

``queue`` only submits work to an executor and returns. Each run first claims
the assignment with a lease so that two workers never research the same id;
completion writes the derived note, the notification and the status change in
one transaction.

On ``start`` every ``in_progress`` assignment without a live lease is queued
again, whatever its age. While running, an interval job calls ``recover_stale``
for assignments that sat unclaimed or with an expired lease for longer than
``stale_after_seconds``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from assistant.completion import CompletionClient, complete_prompt
from assistant.errors import AssignmentNotFoundError, CompletionError, InvalidTransitionError
from assistant.prompts import build_research_prompt
from assistant.storage.stores import Stores
from assistant.util.ids import new_worker_id
from assistant.util.timeparse import utc_now

logger = logging.getLogger("assistant.assignments")

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    IN_PROGRESS: frozenset({COMPLETED, FAILED}),
    FAILED: frozenset({IN_PROGRESS}),
    COMPLETED: frozenset(),
}

NOTIFICATION_PREVIEW_CHARS = 200
MAX_ERROR_CHARS = 500

_RETRY_RESET: Dict[str, Any] = {
    "findings": "",
    "notification_sent": False,
    "completed_at": None,
    "last_error": None,
    "claimed_by": None,
    "lease_expires_at": None,
    "viewed": False,
    "viewed_at": None,
}


def check_transition(current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)


class _ClaimLost(Exception):
    pass


class AssignmentProcessor:
    def __init__(
        self,
        stores: Stores,
        completion: CompletionClient,
        *,
        timeout_seconds: float,
        lease_seconds: int,
        stale_after_seconds: int,
        workers: int = 2,
        recovery_interval_seconds: int = 0,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._stores = stores
        self._completion = completion
        self._timeout_seconds = timeout_seconds
        self._lease_seconds = lease_seconds
        self._stale_after_seconds = stale_after_seconds
        self._workers = workers
        self._recovery_interval_seconds = recovery_interval_seconds
        self._scheduler: Optional[BackgroundScheduler] = None
        self._executor = executor
        self._owns_executor = executor is None
        self._clock = clock

    def _ensure_executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="assignment")
        return self._executor

    @property
    def scheduler(self) -> Optional[BackgroundScheduler]:
        return self._scheduler

    def start(self) -> List[str]:
        self._ensure_executor()
        if self._recovery_interval_seconds > 0 and self._scheduler is None:
            self._scheduler = BackgroundScheduler(timezone="UTC")
            self._scheduler.add_job(
                self._recover_periodically,
                trigger=IntervalTrigger(seconds=self._recovery_interval_seconds),
                id="assignment_recovery",
                name="Requeue stale assignments",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self._scheduler.start()
            logger.info("assignment_recovery_scheduled interval_seconds=%s", self._recovery_interval_seconds)
        return self._requeue(self._stores.assignments.stale_ids())

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def queue(self, assignment_id: str) -> None:
        logger.info("assignment_queued assignment_id=%s", assignment_id)
        self._ensure_executor().submit(self._run, assignment_id)

    def _run(self, assignment_id: str) -> None:
        try:
            self.process(assignment_id)
        except Exception:
            logger.exception("assignment_worker_crashed assignment_id=%s", assignment_id)

    def recover_stale(self) -> List[str]:
        return self._requeue(self._stores.assignments.stale_ids(stale_after_seconds=self._stale_after_seconds))

    def _recover_periodically(self) -> None:
        try:
            self.recover_stale()
        except Exception:
            logger.exception("assignment_recovery_failed")

    def _requeue(self, assignment_ids: List[str]) -> List[str]:
        if assignment_ids:
            logger.info("assignment_stale_requeued count=%s", len(assignment_ids))
        for assignment_id in assignment_ids:
            self.queue(assignment_id)
        return assignment_ids

    def process(self, assignment_id: str) -> bool:
        """Research one assignment. Returns True when it reached ``completed``."""
        store = self._stores.assignments
        worker_id = new_worker_id()
        if not store.claim(assignment_id, worker_id=worker_id, lease_seconds=self._lease_seconds):
            logger.info("assignment_claim_skipped assignment_id=%s", assignment_id)
            return False
        assignment = store.find_by_id(assignment_id)
        if assignment is None:
            return False

        started = time.monotonic()
        logger.info(
            "assignment_started assignment_id=%s type=%s attempt=%s",
            assignment_id,
            assignment["type"],
            assignment["attempts"],
        )
        try:
            findings = complete_prompt(
                self._completion,
                build_research_prompt(assignment["type"], assignment["query"] or assignment["title"]),
                timeout_seconds=self._timeout_seconds,
            ).strip()
            if not findings:
                raise CompletionError("Research returned no findings")
            self._complete(assignment, findings, worker_id)
        except _ClaimLost:
            logger.info("assignment_claim_lost assignment_id=%s worker_id=%s", assignment_id, worker_id)
            return False
        except Exception as exc:
            logger.warning(
                "assignment_failed assignment_id=%s error=%s",
                assignment_id,
                exc,
                exc_info=not isinstance(exc, CompletionError),
            )
            self._fail(assignment_id, worker_id, exc)
            return False
        logger.info(
            "assignment_completed assignment_id=%s duration_ms=%s",
            assignment_id,
            int((time.monotonic() - started) * 1000),
        )
        return True

    def _complete(self, assignment: Dict[str, Any], findings: str, worker_id: str) -> None:
        assignment_id = assignment["assignment_id"]
        now = self._clock()
        preview = findings[:NOTIFICATION_PREVIEW_CHARS]
        if len(findings) > NOTIFICATION_PREVIEW_CHARS:
            preview += "..."
        with self._stores.assignments.engine.begin() as conn:
            note = self._stores.notes.create(
                {
                    "user_id": assignment["user_id"],
                    "title": f"Research: {assignment['title']}",
                    "content": findings,
                    "category": "research",
                    "tags": [assignment["type"], "pa-research", "auto-generated"],
                    "meta": {
                        "assignmentId": assignment_id,
                        "query": assignment["query"],
                        "source": "assignment",
                    },
                },
                conn=conn,
            )
            self._stores.notifications.create_notification(
                user_id=assignment["user_id"],
                type="assignment_complete",
                title=f"Research Complete: {assignment['title']}",
                message=preview,
                priority="high" if assignment["priority"] == "high" else "medium",
                related_id=assignment_id,
                related_model="Assignment",
                action_url=f"/assignments/{assignment_id}",
                metadata={
                    "assignmentType": assignment["type"],
                    "query": assignment["query"],
                    "noteId": note["note_id"],
                },
                conn=conn,
            )
            moved = self._stores.assignments.transition(
                assignment_id,
                from_statuses=[IN_PROGRESS],
                to_status=COMPLETED,
                values={
                    "findings": findings,
                    "completed_at": now,
                    "notification_sent": True,
                    "last_error": None,
                    "claimed_by": None,
                    "lease_expires_at": None,
                },
                claimed_by=worker_id,
                conn=conn,
            )
            if not moved:
                raise _ClaimLost(assignment_id)

    def _fail(self, assignment_id: str, worker_id: str, exc: Exception) -> None:
        try:
            moved = self._stores.assignments.transition(
                assignment_id,
                from_statuses=[IN_PROGRESS],
                to_status=FAILED,
                values={
                    "findings": "",
                    "last_error": str(exc)[:MAX_ERROR_CHARS] or exc.__class__.__name__,
                    "claimed_by": None,
                    "lease_expires_at": None,
                },
                claimed_by=worker_id,
            )
        except Exception:
            logger.exception("assignment_fail_write_failed assignment_id=%s", assignment_id)
            return
        if not moved:
            logger.info("assignment_fail_skipped assignment_id=%s worker_id=%s", assignment_id, worker_id)

    def retry(self, assignment_id: str, *, user_id: str, force: bool = False) -> Dict[str, Any]:
        """Reset a failed assignment and queue it again.

        ``force`` skips the state check so an operator can re-run an
        assignment in any state.
        """
        store = self._stores.assignments
        assignment = store.find_by_id(assignment_id, user_id=user_id)
        if assignment is None:
            raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")
        if force:
            from_statuses = list(ALLOWED_TRANSITIONS)
        else:
            check_transition(assignment["status"], IN_PROGRESS)
            from_statuses = [FAILED]
        if not store.transition(assignment_id, from_statuses=from_statuses, to_status=IN_PROGRESS, values=_RETRY_RESET):
            current = store.find_by_id(assignment_id, user_id=user_id)
            if current is None:
                raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")
            raise InvalidTransitionError(current["status"], IN_PROGRESS)
        logger.info("assignment_retry assignment_id=%s user_id=%s force=%s", assignment_id, user_id, force)
        self.queue(assignment_id)
        return store.find_by_id(assignment_id, user_id=user_id)
