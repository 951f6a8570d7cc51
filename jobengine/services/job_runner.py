"""Supervised runner for content-generation jobs.

Each admitted job runs as its own asyncio task with an explicit
lifecycle:

    submitted -> running -> completed | failed | cancelled
    (rejected: the reservation was refused; no task is started)

The runner owns the reservation hook points. A job is started only
after ``ReservationLedger.reserve`` admits it. A finished job commits
the billing units its generation steps actually incurred, whatever the
quality verdict. A job that fails or is cancelled releases its hold.

Lifecycle:
- submit() reserves, creates the task and returns immediately.
- wait() blocks until the job reaches a terminal state.
- cancel() cancels one job and waits for its release.
- shutdown() cancels every running job.
- forget() drops the record of a finished job.

Finished tasks are dropped as soon as they settle; job records stay
until forgotten.
"""

import asyncio
import contextlib
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from jobengine.core.errors import JobAlreadyActiveError, JobNotFoundError
from jobengine.providers.base import (
    ChatMessage,
    CompletionResult,
    GeneratedImage,
    ResponseFormat,
)
from jobengine.providers.router import ProviderRouter
from jobengine.services.quality_gate import (
    ArticleContent,
    ArticleMeta,
    QualityGate,
    QualityGateInput,
    QualityVerdict,
)
from jobengine.services.reservation_ledger import (
    InsufficientBalance,
    ReservationLedger,
)

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Lifecycle states of a generation job."""

    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.SUBMITTED, JobStatus.RUNNING)


@dataclass(frozen=True)
class ArticleRequest:
    """What the caller wants generated.

    Attributes:
        keyword: Focus keyword.
        target_word_count: Requested length in words.
        model: Default model for the pipeline's generation steps.
        quality_threshold: Per-job quality threshold override.
        site_host: Host used to recognise absolute internal links.
    """

    keyword: str
    target_word_count: int
    model: str = "deepseek-chat"
    quality_threshold: float | None = None
    site_host: str | None = None


@dataclass(frozen=True)
class PipelineOutput:
    """Final output of a pipeline run.

    Attributes:
        html: Article body HTML.
        meta: SEO metadata, or None if the meta step produced nothing.
    """

    html: str
    meta: ArticleMeta | None = None


class JobContext:
    """Handle a pipeline uses to reach providers on behalf of one job.

    Every completion goes through the shared router; billing tokens are
    accumulated so the runner can commit what the job actually used.
    """

    def __init__(
        self,
        job_id: uuid.UUID,
        account_id: uuid.UUID,
        request: ArticleRequest,
        router: ProviderRouter,
    ) -> None:
        self.job_id = job_id
        self.account_id = account_id
        self.request = request
        self._router = router
        self.billing_tokens = 0
        self.calls = 0

    async def complete(
        self,
        messages: Sequence[ChatMessage] | str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> CompletionResult:
        """Run one generation step; defaults to the request's model.

        Temperature and max_tokens fall back to the router's defaults.
        """
        result = await self._router.complete(
            model or self.request.model,
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format=response_format,
        )
        self.billing_tokens += result.usage.total_billing_tokens
        self.calls += 1
        return result

    async def generate_image(
        self, model: str, prompt: str, *, count: int = 1
    ) -> list[GeneratedImage]:
        return await self._router.generate_image(model, prompt, count=count)


class ContentPipeline(ABC):
    """Sequence of generation steps (research, strategy, writing, meta)."""

    @abstractmethod
    async def run(self, ctx: JobContext) -> PipelineOutput:
        """Produce the article for ``ctx.request``."""
        ...


@dataclass
class GenerationJob:
    """Runner-side record of one job.

    Attributes:
        job_id: Job identifier (also the reservation key).
        account_id: Account charged.
        request: What was requested.
        estimated_units: Units reserved at submission.
        status: Current lifecycle state.
        created_at: Submission time.
        started_at: When the task started running.
        finished_at: When the job reached a terminal state.
        output: Pipeline output on completion.
        verdict: Quality verdict on completion.
        units_used: Billing units committed on completion.
        error: Failure message on failure.
    """

    job_id: uuid.UUID
    account_id: uuid.UUID
    request: ArticleRequest
    estimated_units: int
    status: JobStatus = JobStatus.SUBMITTED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    output: PipelineOutput | None = None
    verdict: QualityVerdict | None = None
    units_used: int | None = None
    error: str | None = None

    def _finish(self, status: JobStatus) -> None:
        self.status = status
        self.finished_at = datetime.now(UTC)


@dataclass(frozen=True)
class JobSubmission:
    """Outcome of ``JobRunner.submit``.

    Attributes:
        job_id: Identifier of the submitted job.
        accepted: True if the job was admitted and started.
        insufficient_balance: The rejection condition when not accepted.
    """

    job_id: uuid.UUID
    accepted: bool
    insufficient_balance: InsufficientBalance | None = None


class JobRunner:
    """Runs generation jobs as supervised asyncio tasks.

    Args:
        ledger: Reservation ledger for admission and settlement.
        router: Provider router shared by all jobs.
        quality_gate: Gate scoring each finished article.
        pipeline: The generation steps to run per job.
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        router: ProviderRouter,
        quality_gate: QualityGate,
        pipeline: ContentPipeline,
    ) -> None:
        self._ledger = ledger
        self._router = router
        self._quality_gate = quality_gate
        self._pipeline = pipeline
        self._jobs: dict[uuid.UUID, GenerationJob] = {}
        self._tasks: dict[uuid.UUID, asyncio.Task[None]] = {}

    @property
    def active_jobs(self) -> int:
        """Jobs not yet in a terminal state."""
        return sum(1 for job in self._jobs.values() if not job.status.is_terminal)

    async def submit(
        self,
        account_id: uuid.UUID,
        estimated_units: int,
        request: ArticleRequest,
        job_id: uuid.UUID | None = None,
    ) -> JobSubmission:
        """Reserve the job's estimated cost and start it.

        Returns:
            JobSubmission; not accepted (and no task started) when the
            account cannot cover the estimate.

        Raises:
            InvalidAmountError: If estimated_units is not positive.
            AccountNotFoundError: If the account does not exist.
            JobAlreadyActiveError: If the job id is already submitted or
                running, here or under another holder of its reservation.
        """
        job_id = job_id or uuid.uuid4()
        previous = self._jobs.get(job_id)
        if previous is not None and not previous.status.is_terminal:
            raise JobAlreadyActiveError(job_id)
        job = GenerationJob(
            job_id=job_id,
            account_id=account_id,
            request=request,
            estimated_units=estimated_units,
        )

        reservation = await self._ledger.reserve(account_id, job_id, estimated_units)
        if reservation.already_held:
            logger.warning(
                "Job %s already holds a reservation; not starting a second run",
                job_id,
            )
            raise JobAlreadyActiveError(job_id)
        if not reservation.ok:
            job._finish(JobStatus.REJECTED)
            self._jobs[job_id] = job
            logger.info("Job %s rejected: insufficient balance", job_id)
            return JobSubmission(
                job_id=job_id,
                accepted=False,
                insufficient_balance=reservation.insufficient_balance,
            )

        self._jobs[job_id] = job
        ctx = JobContext(job_id, account_id, request, self._router)
        task = asyncio.create_task(
            self._run(job, ctx), name=f"generation-job-{job_id}"
        )
        task.add_done_callback(lambda t: self._drop_task(job, t))
        self._tasks[job_id] = task
        logger.info("Job %s submitted (%d units reserved)", job_id, estimated_units)
        return JobSubmission(job_id=job_id, accepted=True)

    async def _run(self, job: GenerationJob, ctx: JobContext) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(UTC)
        try:
            output = await self._pipeline.run(ctx)
            verdict = self._quality_gate.evaluate(
                QualityGateInput(
                    article=ArticleContent.from_html(
                        output.html, job.request.keyword, job.request.site_host
                    ),
                    meta=output.meta,
                    target_word_count=job.request.target_word_count,
                    quality_threshold=job.request.quality_threshold,
                )
            )
            await self._ledger.commit(job.job_id, ctx.billing_tokens)
        except asyncio.CancelledError:
            await self._ledger.release(job.job_id)
            job._finish(JobStatus.CANCELLED)
            logger.info("Job %s cancelled; reservation released", job.job_id)
            raise
        except Exception as e:
            logger.exception("Job %s failed", job.job_id)
            await self._ledger.release(job.job_id)
            job.error = str(e)
            job._finish(JobStatus.FAILED)
            return

        job.output = output
        job.verdict = verdict
        job.units_used = ctx.billing_tokens
        job._finish(JobStatus.COMPLETED)
        if verdict.blockers:
            logger.warning(
                "Job %s completed with %d quality blockers; not publishable",
                job.job_id,
                len(verdict.blockers),
            )
        logger.info(
            "Job %s completed: score %.1f, %d units used (estimated %d)",
            job.job_id,
            verdict.score,
            ctx.billing_tokens,
            job.estimated_units,
        )

    def get(self, job_id: uuid.UUID) -> GenerationJob:
        """Current record of a job.

        Raises:
            JobNotFoundError: If the runner never saw the job.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def forget(self, job_id: uuid.UUID) -> bool:
        """Drop a finished job's record.

        Returns:
            True if the record was removed; False while the job is active.

        Raises:
            JobNotFoundError: If the runner never saw the job.
        """
        job = self.get(job_id)
        if not job.status.is_terminal or job_id in self._tasks:
            return False
        del self._jobs[job_id]
        return True

    def _drop_task(self, job: GenerationJob, task: asyncio.Task[None]) -> None:
        # A task cancelled before its first step is left for _settle to release.
        if job.status.is_terminal and self._tasks.get(job.job_id) is task:
            del self._tasks[job.job_id]

    async def _settle(self, job: GenerationJob, task: asyncio.Task[None]) -> None:
        await asyncio.wait({task})
        # Cancelled before its first step: the task body never ran.
        if not job.status.is_terminal:
            await self._ledger.release(job.job_id)
            job._finish(JobStatus.CANCELLED)
        self._drop_task(job, task)

    async def wait(self, job_id: uuid.UUID) -> GenerationJob:
        """Wait until the job is terminal and return its record."""
        job = self.get(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await self._settle(job, task)
        return job

    async def cancel(self, job_id: uuid.UUID) -> bool:
        """Cancel a job and wait for its reservation to be released.

        Returns:
            True if the job ended up cancelled by this call.
        """
        job = self.get(job_id)
        task = self._tasks.get(job_id)
        if task is None or job.status.is_terminal:
            return False
        task.cancel()
        await self._settle(job, task)
        return job.status is JobStatus.CANCELLED

    async def shutdown(self) -> None:
        """Cancel all running jobs, releasing their reservations."""
        pending = [
            (self._jobs[job_id], task)
            for job_id, task in self._tasks.items()
            if not task.done()
        ]
        for _, task in pending:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*(self._settle(job, task) for job, task in pending))
        logger.info("Job runner stopped (%d jobs cancelled)", len(pending))
