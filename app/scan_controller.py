from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.errors import ApiError, InvalidTransitionError, JobNotFoundError, JobPayloadError
from app.job_store import JobSnapshot, JobStore
from app.metrics import MetricsCollector, Phase
from app.quick_verdict import assess, merge_verdicts
from app.token_optimizer import TokenBudget, extract_menu_tokens, optimize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OcrResult:
    text: str
    quick_verdict: dict[str, Any] | None = None
    menu_tokens: list[str] | None = None
    confidence: str = "medium"
    failed: bool = False


@dataclass(frozen=True)
class UserContext:
    user_id: str
    allergies: list[str] = field(default_factory=list)
    diets: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScanRequest:
    image: bytes
    user_id: str
    language: str = "en"


class TextExtractor(Protocol):
    async def extract_text(self, image: bytes) -> OcrResult: ...


class ContextProvider(Protocol):
    async def fetch_context(self, user_id: str) -> UserContext: ...


class Analyzer(Protocol):
    async def analyze(self, bounded_tokens: Sequence[str], language: str) -> dict[str, Any]: ...


class ResultSaver(Protocol):
    async def save(self, job_id: str, final_result: dict[str, Any]) -> None: ...


class StageError(Exception):
    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage}_failed: {type(cause).__name__}")
        self.stage = stage
        self.cause = cause


class _LateWrite(Exception):
    """A stage result arrived after the job went terminal."""


def _consume(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class ScanController:
    """Runs one scan end to end against an explicitly wired store and collector.

    Flow: create job -> OCR and context fetch as two tasks -> PARTIAL with the
    quick verdict -> optimize tokens -> analyze -> FINAL -> save once.

    A deadline or a client disconnect marks the job FAILED; in-flight stages are
    left to finish and their late writes are rejected by the store's state
    machine, then discarded here.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        collector: MetricsCollector,
        budget: TokenBudget,
        extractor: TextExtractor,
        context_provider: ContextProvider,
        analyzer: Analyzer,
        saver: ResultSaver,
        deadline_s: float = 30.0,
        merge_quick_verdict: bool = True,
    ) -> None:
        self.store = store
        self.collector = collector
        self.budget = budget
        self.extractor = extractor
        self.context_provider = context_provider
        self.analyzer = analyzer
        self.saver = saver
        self.deadline_s = max(0.001, float(deadline_s))
        self.merge_quick_verdict = merge_quick_verdict
        self._tasks: dict[str, asyncio.Task] = {}
        self._stragglers: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def submit(self, request: ScanRequest) -> str:
        """Create the job and run the pipeline in the background."""
        job_id = await asyncio.to_thread(self.store.create_job)
        self._start(job_id, request)
        return job_id

    async def run(self, request: ScanRequest) -> JobSnapshot:
        """Run a scan to completion and return the job's final snapshot."""
        job_id = await asyncio.to_thread(self.store.create_job)
        await self._start(job_id, request)
        return await asyncio.to_thread(self.store.get_job, job_id)

    async def cancel(self, job_id: str, reason: str = "client_disconnected") -> JobSnapshot:
        snapshot = await asyncio.to_thread(self.store.fail, job_id, reason)
        logger.info("scan_cancelled job_id=%s reason=%s", job_id, reason)
        return snapshot

    async def drain(self, timeout_s: float | None = None) -> int:
        """Wait for in-flight pipelines (and stragglers past their deadline)."""
        pending = list(self._tasks.values()) + list(self._stragglers)
        if not pending:
            return 0
        done, not_done = await asyncio.wait(pending, timeout=timeout_s)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
        logger.info("scan_controller_drained finished=%s cancelled=%s", len(done), len(not_done))
        return len(done)

    def _start(self, job_id: str, request: ScanRequest) -> asyncio.Task:
        task = asyncio.create_task(self._pipeline(job_id, request))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return task

    # -- pipeline -------------------------------------------------------

    async def _pipeline(self, job_id: str, request: ScanRequest) -> None:
        started = time.time()
        stages = asyncio.create_task(self._stages(job_id, request))
        try:
            done, _ = await asyncio.wait({stages}, timeout=self.deadline_s)
            if stages not in done:
                logger.warning("scan_deadline_exceeded job_id=%s deadline_s=%s", job_id, self.deadline_s)
                self._stragglers.add(stages)
                stages.add_done_callback(self._stragglers.discard)
                stages.add_done_callback(_consume)
                await self._fail(job_id, "deadline_exceeded")
                return
            exc = stages.exception()
            if exc is not None:
                logger.error("scan_pipeline_crashed job_id=%s error=%s", job_id, exc)
                await self._fail(job_id, f"internal_error: {type(exc).__name__}")
        except asyncio.CancelledError:
            stages.cancel()
            await asyncio.gather(stages, return_exceptions=True)
            raise
        finally:
            self.collector.record(Phase.TOTAL, started, time.time(), {"job_id": job_id})

    async def _stages(self, job_id: str, request: ScanRequest) -> None:
        ocr_task = asyncio.create_task(
            self._timed(Phase.OCR, job_id, "ocr", self.extractor.extract_text(request.image))
        )
        ctx_task = asyncio.create_task(
            self._timed(Phase.CONTEXT, job_id, "context", self.context_provider.fetch_context(request.user_id))
        )
        try:
            try:
                ocr = await ocr_task
            except StageError:
                ctx_task.add_done_callback(_consume)
                raise
            context: UserContext | None = None
            quick = ocr.quick_verdict
            if quick is None:
                context = await ctx_task
                with self.collector.phase_timer(Phase.QUICK, job_id=job_id):
                    quick = assess(
                        ocr.text,
                        context.allergies,
                        context.diets,
                        confidence=ocr.confidence,
                        ocr_failed=ocr.failed,
                    )
            await self._write(
                self.store.set_partial,
                job_id,
                {"quick_verdict": quick, "ocr_confidence": ocr.confidence},
            )
            if context is None:
                context = await ctx_task

            with self.collector.phase_timer(Phase.OPTIMIZE, job_id=job_id):
                menu_tokens = ocr.menu_tokens if ocr.menu_tokens is not None else extract_menu_tokens(ocr.text)
                bounded = optimize(context.allergies, menu_tokens, self.budget)
            if bounded.was_truncated:
                logger.info(
                    "scan_tokens_truncated job_id=%s kept=%s dropped=%s",
                    job_id,
                    bounded.item_count,
                    len(bounded.dropped),
                )

            analysis = await self._timed(
                Phase.ANALYSIS,
                job_id,
                "analysis",
                self.analyzer.analyze(bounded.bounded, request.language),
            )
            final = merge_verdicts(quick, analysis) if self.merge_quick_verdict else dict(analysis)
            final["token_budget"] = {"item_count": bounded.item_count, "dropped": bounded.dropped}
            await self._write(self.store.set_final, job_id, final)
        except asyncio.CancelledError:
            for task in (ocr_task, ctx_task):
                task.cancel()
            await asyncio.gather(ocr_task, ctx_task, return_exceptions=True)
            raise
        except _LateWrite:
            return
        except StageError as exc:
            logger.warning("scan_stage_failed job_id=%s stage=%s error=%s", job_id, exc.stage, exc.cause)
            await self._fail(job_id, str(exc))
            return

        await self._persist(job_id, final)

    async def _timed(self, phase: Phase, job_id: str, stage: str, awaitable: Any) -> Any:
        started = time.time()
        try:
            return await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise StageError(stage, exc) from exc
        finally:
            self.collector.record(phase, started, time.time(), {"job_id": job_id})

    async def _write(self, method: Any, job_id: str, payload: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(method, job_id, payload)
        except (InvalidTransitionError, JobNotFoundError) as exc:
            logger.info("scan_late_write_discarded job_id=%s reason=%s", job_id, exc.code)
            raise _LateWrite() from exc
        except JobPayloadError as exc:
            raise StageError("store", exc) from exc

    async def _persist(self, job_id: str, final: dict[str, Any]) -> None:
        with self.collector.phase_timer(Phase.PERSIST, job_id=job_id):
            try:
                flipped = await asyncio.to_thread(self.store.mark_persisted, job_id)
            except ApiError as exc:
                logger.warning("scan_persist_flag_failed job_id=%s code=%s", job_id, exc.code)
                return
            if not flipped:
                return
            try:
                await self.saver.save(job_id, final)
            except Exception:
                # FINAL is already visible to the client; a failed save is not a failed scan.
                logger.exception("scan_result_save_failed job_id=%s", job_id)

    async def _fail(self, job_id: str, reason: str) -> None:
        try:
            await asyncio.to_thread(self.store.fail, job_id, reason)
        except (InvalidTransitionError, JobNotFoundError):
            logger.info("scan_fail_skipped job_id=%s reason=%s", job_id, reason)
        except ApiError as exc:
            logger.error("scan_fail_unrecorded job_id=%s reason=%s code=%s", job_id, reason, exc.code)
