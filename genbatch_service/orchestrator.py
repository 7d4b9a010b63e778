"""
Batch orchestrator.

Jobs run strictly one at a time through a retry/backoff state machine:

    Pending -> Processing -> Completed
                          -> Processing (retry after backoff)
                          -> Failed

Two delays are kept apart on purpose: exponential backoff between attempts
of the same job (transient overload) and a fixed cooldown between jobs
(per-caller rate limits). Observers read snapshots via `BatchHandle`; the
worker thread is the only writer.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional
import uuid

from . import config
from .client import GenerationClient
from .errors import AuthorizationRequired, Cancelled, GenerationError, classify_exception
from .models import Artifact, JobSpec, JobState, JobStatus, Progress
from .pipeline import execute_job, prepare_inputs
from .postprocessing import DEFAULT_TOLERANCE
from .storage import PersistenceSink

logger = logging.getLogger(__name__)

StatusListener = Callable[[JobState], None]


@dataclass(frozen=True)
class BatchPolicy:
    max_attempts: int = 3
    base_delay: float = 4.0
    inter_job_cooldown: float = 2.0
    request_timeout: Optional[float] = None
    background_tolerance: float = DEFAULT_TOLERANCE
    preprocess_references: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.inter_job_cooldown < 0:
            raise ValueError("delays must be non-negative")

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base * 2**attempt."""
        return self.base_delay * (2 ** attempt)

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None, **overrides) -> "BatchPolicy":
        settings = settings or config.get_settings()
        values = dict(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            inter_job_cooldown=settings.inter_job_cooldown_seconds,
            request_timeout=settings.request_timeout_seconds,
            background_tolerance=settings.background_tolerance,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class BatchRun:
    """
    Ordered job states for one batch plus the loop that drives them.

    `run()` never raises; every outcome ends up in a JobState.
    """

    def __init__(
        self,
        specs: Iterable[JobSpec],
        client: GenerationClient,
        policy: Optional[BatchPolicy] = None,
        sink: Optional[PersistenceSink] = None,
        precondition: Optional[Callable[[List[JobSpec]], None]] = None,
        listener: Optional[StatusListener] = None,
        sleep: Optional[Callable[[float], None]] = None,
        batch_id: Optional[str] = None,
    ):
        self.specs: List[JobSpec] = list(specs)
        ids = [spec.id for spec in self.specs]
        if len(set(ids)) != len(ids):
            raise ValueError("job ids must be unique within a batch")

        self.batch_id = batch_id or uuid.uuid4().hex
        self.client = client
        self.policy = policy or BatchPolicy()
        self.sink = sink
        self.precondition = precondition
        self.listener = listener

        self._states: Dict[str, JobState] = {
            spec.id: JobState(job_id=spec.id, prompt=spec.prompt_text, label=spec.label) for spec in self.specs
        }
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()
        self._finished = 0
        self._sleep = sleep or self._cancel_event.wait

    # ------------------------------------------------------------------
    # observer side

    def progress(self) -> Progress:
        with self._lock:
            return Progress(self._finished, len(self.specs))

    def status_of(self, job_id: str) -> JobState:
        with self._lock:
            if job_id not in self._states:
                raise KeyError(job_id)
            return replace(self._states[job_id])

    def states(self) -> List[JobState]:
        with self._lock:
            return [replace(self._states[spec.id]) for spec in self.specs]

    def cancel(self) -> None:
        logger.info("batch %s: cancellation requested", self.batch_id)
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done_event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done_event.wait(timeout)

    # ------------------------------------------------------------------
    # worker side

    def run(self) -> None:
        logger.info("batch %s: starting %d job(s)", self.batch_id, len(self.specs))
        try:
            if self.precondition is not None:
                try:
                    self.precondition(self.specs)
                except AuthorizationRequired as exc:
                    logger.warning("batch %s: %s", self.batch_id, exc)
                    self._fail_remaining(exc)
                    return

            last_index = len(self.specs) - 1
            for index, spec in enumerate(self.specs):
                if self.cancelled:
                    break
                error = self._process(spec)
                if isinstance(error, AuthorizationRequired):
                    # New credentials are needed; no sibling job can succeed.
                    self._fail_remaining(error)
                    return
                if index < last_index and not self.cancelled:
                    self._sleep(self.policy.inter_job_cooldown)

            if self.cancelled:
                self._fail_remaining(Cancelled("Batch cancelled before this job started"))
        except Exception:  # noqa: BLE001
            logger.exception("batch %s: orchestrator crashed", self.batch_id)
            self._fail_remaining(Cancelled("Batch aborted by an internal error"))
        finally:
            logger.info(
                "batch %s: finished (%d/%d terminal)", self.batch_id, self._finished, len(self.specs)
            )
            self._done_event.set()

    def _process(self, spec: JobSpec) -> Optional[GenerationError]:
        """Drive one job to a terminal state; return its error, if any."""
        self._update(spec.id, status=JobStatus.PROCESSING)
        logger.info("batch %s: job %s processing", self.batch_id, spec.id)

        try:
            inputs = prepare_inputs(spec, preprocess=self.policy.preprocess_references)
        except Exception as exc:  # noqa: BLE001
            logger.warning("job %s: reference preprocessing failed (%s); sending originals", spec.id, exc)
            inputs = prepare_inputs(spec, preprocess=False)

        while True:
            try:
                artifact = execute_job(
                    spec,
                    self.client,
                    inputs=inputs,
                    timeout=self.policy.request_timeout,
                    tolerance=self.policy.background_tolerance,
                )
            except Exception as exc:  # noqa: BLE001
                error = classify_exception(exc)
            else:
                self._update(spec.id, status=JobStatus.COMPLETED, result_artifact=artifact)
                logger.info("batch %s: job %s completed", self.batch_id, spec.id)
                self._persist(spec, artifact)
                return None

            if not error.retryable:
                logger.warning("job %s: %s (%s), not retrying", spec.id, error.code, error)
                self._update(spec.id, status=JobStatus.FAILED, last_error=error)
                return error

            attempt = self._bump_attempt(spec.id)
            if attempt >= self.policy.max_attempts:
                logger.warning("job %s: giving up after %d attempt(s): %s", spec.id, attempt, error)
                self._update(spec.id, status=JobStatus.FAILED, last_error=error)
                return error

            delay = self.policy.backoff(attempt)
            logger.warning(
                "job %s: attempt %d failed (%s); retrying in %.1fs", spec.id, attempt, error, delay
            )
            self._sleep(delay)
            if self.cancelled:
                cancelled = Cancelled("Batch cancelled before retry")
                self._update(spec.id, status=JobStatus.FAILED, last_error=cancelled)
                return cancelled

    def _persist(self, spec: JobSpec, artifact: Artifact) -> None:
        if self.sink is None:
            return
        metadata = {
            "id": spec.id,
            "prompt": spec.prompt_text,
            "label": spec.label,
            "mode": spec.mode,
            "kind": spec.kind.value,
        }
        try:
            self.sink.save(artifact, metadata)
        except Exception:  # noqa: BLE001
            logger.exception("job %s: failed to persist artifact", spec.id)

    def _fail_remaining(self, error: GenerationError) -> None:
        for spec in self.specs:
            self._update(spec.id, status=JobStatus.FAILED, last_error=error)

    def _bump_attempt(self, job_id: str) -> int:
        with self._lock:
            state = self._states[job_id]
            state.attempt += 1
            return state.attempt

    def _update(self, job_id: str, **changes) -> None:
        with self._lock:
            state = self._states[job_id]
            if state.is_terminal:
                return
            for key, value in changes.items():
                setattr(state, key, value)
            if state.is_terminal:
                self._finished += 1
            snapshot = replace(state)
        if self.listener is not None:
            try:
                self.listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("status listener failed for job %s", job_id)


class BatchHandle:
    """Caller-facing view of a running batch."""

    def __init__(self, run: BatchRun, thread: Optional[threading.Thread] = None):
        self._run = run
        self._thread = thread

    @property
    def batch_id(self) -> str:
        return self._run.batch_id

    @property
    def job_ids(self) -> List[str]:
        return [spec.id for spec in self._run.specs]

    def progress(self) -> Progress:
        return self._run.progress()

    def status_of(self, job_id: str) -> JobState:
        return self._run.status_of(job_id)

    def states(self) -> List[JobState]:
        return self._run.states()

    def cancel(self) -> None:
        self._run.cancel()

    @property
    def done(self) -> bool:
        return self._run.done

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._run.wait(timeout)


def submit_batch(
    job_specs: Iterable[JobSpec],
    client: GenerationClient,
    max_attempts: int = 3,
    base_delay: float = 4.0,
    inter_job_cooldown: float = 2.0,
    *,
    policy: Optional[BatchPolicy] = None,
    sink: Optional[PersistenceSink] = None,
    precondition: Optional[Callable[[List[JobSpec]], None]] = None,
    listener: Optional[StatusListener] = None,
    sleep: Optional[Callable[[float], None]] = None,
    background: bool = True,
) -> BatchHandle:
    """
    Start a batch and return its handle.

    With `background=True` the jobs run on a daemon thread and the handle
    is returned immediately; otherwise the call blocks until every job is
    terminal. Either way the batch never raises; poll per-job status.
    """
    policy = policy or BatchPolicy(
        max_attempts=max_attempts, base_delay=base_delay, inter_job_cooldown=inter_job_cooldown
    )
    run = BatchRun(
        job_specs,
        client,
        policy=policy,
        sink=sink,
        precondition=precondition,
        listener=listener,
        sleep=sleep,
    )
    if not background:
        run.run()
        return BatchHandle(run)

    thread = threading.Thread(target=run.run, name=f"batch-{run.batch_id[:8]}", daemon=True)
    thread.start()
    return BatchHandle(run, thread)


def require_api_key(settings: Optional[config.Settings] = None) -> Callable[[List[JobSpec]], None]:
    """Precondition: a credential must be selected before any job can run."""

    def _check(specs: List[JobSpec]) -> None:
        current = settings or config.get_settings()
        if specs and not current.gemini_api_key:
            raise AuthorizationRequired("An API key must be selected before generating.")

    return _check
