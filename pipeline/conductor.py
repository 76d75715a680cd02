"""
Ingestion Conductor - One run of the ingestion-to-task pipeline

Coordinates:
- Token budget for the run (model input limit minus chunk prompt template)
- RangeFetcher over the requested date range
- Per meeting: existing-task check -> count/pack/plan -> create

Per-meeting failures are logged, reported and skipped. A run fails as a whole
only when the budget cannot be computed or every date window failed.

Also hosts the dietwatch CLI (main()).
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from analysis.llm.token_counter import TokenCounter, compute_available_tokens
from config import Config, get_logger
from exceptions import DietwatchError, RangeFetchError
from pipeline.models import BudgetContext, RunRange
from pipeline.plan_builder import TaskPlanBuilder, meeting_issue_id
from pipeline.prompts import CHUNK_PROMPT
from pipeline.protocols import MetricsCollector, NullMetrics
from upstream.range_fetcher import FetchOptions, RangeFetcher
from upstream.schemas import RawMeetingRecord

logger = get_logger(__name__).bind(component="conductor")


@dataclass
class RunSummary:
    run_id: str
    range: str
    record_count: int = 0
    meetings_fetched: int = 0
    meetings_processed: int = 0
    created: int = 0
    existing: int = 0
    skipped: int = 0
    failed: int = 0
    failed_windows: List[Dict[str, Any]] = field(default_factory=list)
    issue_ids: List[str] = field(default_factory=list)
    available_tokens: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IngestionConductor:
    """Run the ingestion pipeline for a date range

    Args:
        config: Process configuration
        fetcher: RangeFetcher for the meetings API
        planner: TaskPlanBuilder writing prompt payloads
        tasks: Task repository (TaskRepository or InMemoryTaskRepository)
        counter: Token counter used for the budget and per-speech lengths
        notifier: Notification collaborator (WebhookNotifier / NullNotifier)
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        config: Config,
        fetcher: RangeFetcher,
        planner: TaskPlanBuilder,
        tasks,
        counter: TokenCounter,
        notifier,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.fetcher = fetcher
        self.planner = planner
        self.tasks = tasks
        self.counter = counter
        self.notifier = notifier
        self.metrics = metrics or NullMetrics()

    def fetch_options(self, use_cache: bool = True, bypass_cache: bool = False) -> FetchOptions:
        return FetchOptions(
            max_records_per_page=self.config.MAX_RECORDS_PER_PAGE,
            chunk_days=self.config.CHUNK_DAYS,
            request_interval_ms=self.config.REQUEST_INTERVAL_MS,
            max_pages=self.config.MAX_PAGES_PER_DAY,
            use_cache=use_cache,
            bypass_cache=bypass_cache,
        )

    async def run(
        self,
        run_range: RunRange,
        use_cache: bool = True,
        bypass_cache: bool = False,
        trigger: str = "manual",
    ) -> RunSummary:
        """Fetch, plan and persist tasks for every meeting in run_range

        Raises:
            ConfigurationError: Prompt template leaves no token budget
            LLMError: Budget token count failed
            RangeFetchError: Every date window failed
        """
        started = time.monotonic()
        summary = RunSummary(run_id=uuid.uuid4().hex[:12], range=str(run_range))
        run_logger = logger.bind(run_id=summary.run_id, range=summary.range, trigger=trigger)
        run_logger.info("ingestion run starting")

        with self.metrics.run_duration.labels(trigger=trigger).time():
            try:
                available = await compute_available_tokens(
                    self.counter, self.config.GEMINI_MAX_INPUT_TOKENS, CHUNK_PROMPT
                )
            except DietwatchError as e:
                run_logger.error("token budget computation failed", error=str(e), error_type=type(e).__name__)
                self.metrics.record_error("conductor", e)
                await self.notifier.notify_run_error("Token budget computation failed", run_range, e)
                raise

            summary.available_tokens = available
            budget_context = BudgetContext(
                available_tokens=available,
                max_input_tokens=self.config.GEMINI_MAX_INPUT_TOKENS,
                llm_model=self.config.GEMINI_MODEL,
                run_id=summary.run_id,
                run_range=run_range,
            )

            result = await self.fetcher.fetch(
                self.config.API_ENDPOINT, run_range, self.fetch_options(use_cache, bypass_cache)
            )
            summary.record_count = result.record_count
            summary.meetings_fetched = len(result.meetings)
            summary.failed_windows = [w.to_dict() for w in result.failed_windows]

            if result.all_failed:
                error = RangeFetchError(
                    f"All {len(result.failed_windows)} date windows failed",
                    failed_windows=summary.failed_windows,
                )
                run_logger.error("range fetch failed", failed_windows=len(result.failed_windows))
                self.metrics.record_error("conductor", error)
                await self.notifier.notify_run_error("Meetings API unreachable for the whole range", run_range, error)
                raise error

            if result.failed_windows:
                detail = "; ".join(f"{w['window']}: {w['error']}" for w in summary.failed_windows)
                await self.notifier.notify_run_warning(
                    f"{len(result.failed_windows)} date windows failed; continuing with partial results",
                    run_range,
                    detail,
                )

            for meeting in result.meetings:
                await self._process_meeting(meeting, budget_context, summary, run_logger)

        summary.duration_seconds = round(time.monotonic() - started, 3)
        run_logger.info(
            "ingestion run complete",
            meetings=summary.meetings_processed,
            created=summary.created,
            existing=summary.existing,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_seconds=summary.duration_seconds,
        )

        await self.notifier.notify_tasks_created(
            run_range,
            summary.meetings_processed,
            summary.created,
            summary.existing,
            summary.issue_ids,
        )
        return summary

    async def _process_meeting(
        self,
        meeting: RawMeetingRecord,
        budget_context: BudgetContext,
        summary: RunSummary,
        run_logger,
    ):
        summary.meetings_processed += 1
        issue_id = meeting_issue_id(meeting)
        task = None

        try:
            if self.planner.skip_reason(meeting) is None:
                pk = self.planner.task_id(meeting)
                if await self.tasks.get_task(pk) is not None:
                    run_logger.info("task already exists, skipping meeting", pk=pk, issue_id=issue_id)
                    self.metrics.tasks_existing.labels(stage="precheck").inc()
                    summary.existing += 1
                    return

            task = await self.planner.build_for_meeting(
                meeting,
                budget_context,
                self.counter.count,
                self.config.TOKEN_COUNT_CONCURRENCY,
            )
            if task is None:
                summary.skipped += 1
                return

            if await self.tasks.create_task(task):
                self.metrics.tasks_created.labels(processing_mode=task.processing_mode).inc()
                summary.created += 1
                summary.issue_ids.append(issue_id)
            else:
                self.metrics.tasks_existing.labels(stage="create").inc()
                summary.existing += 1

        except Exception as e:  # Intentionally broad: one meeting must not end the run
            summary.failed += 1
            run_logger.error(
                "meeting failed",
                issue_id=issue_id or None,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.metrics.record_error("conductor", e)
            await self.notifier.notify_task_write_failure(issue_id, e, task)


async def build_conductor(
    config: Config,
    dry_run: bool = False,
    metrics: Optional[MetricsCollector] = None,
):
    """Wire every collaborator from config

    Returns:
        (conductor, db) - db is None for dry runs
    """
    from analysis.llm.token_counter import GeminiTokenCounter
    from database.db_postgres import Database
    from database.repositories_async import InMemoryTaskRepository
    from notifications.webhook import WebhookNotifier
    from storage.object_store import LocalObjectStore
    from upstream.cache import JsonFileResponseCache
    from upstream.normalizer import ResponseNormalizer

    metrics = metrics or NullMetrics()
    notifier = WebhookNotifier.from_config(config)
    cache = JsonFileResponseCache(config.CACHE_FILE) if config.CACHE_FILE else None
    fetcher = RangeFetcher(
        normalizer=ResponseNormalizer(notifier=notifier, metrics=metrics),
        cache=cache,
        metrics=metrics,
        timeout_seconds=config.REQUEST_TIMEOUT_SECONDS,
    )
    store = LocalObjectStore(config.STORAGE_ROOT, config.PROMPT_BUCKET)
    planner = TaskPlanBuilder(store, task_id_mode=config.TASK_ID_MODE, metrics=metrics)
    counter = GeminiTokenCounter(
        api_key=config.GEMINI_API_KEY,
        model=config.GEMINI_MODEL,
        timeout_seconds=config.REQUEST_TIMEOUT_SECONDS,
        metrics=metrics,
    )

    db = None
    if dry_run:
        tasks = InMemoryTaskRepository()
    else:
        db = await Database.from_config(config)
        tasks = db.tasks

    conductor = IngestionConductor(config, fetcher, planner, tasks, counter, notifier, metrics)
    return conductor, db


def _task_json(task) -> str:
    return json.dumps(task.to_dict(), ensure_ascii=False, indent=2)


def main():
    """Entry point for the dietwatch CLI"""
    import click

    from config import configure_structlog
    from database.db_postgres import Database
    from pipeline.click_types import YMD
    from pipeline.metrics import DietwatchMetrics
    from pipeline.range import default_cron_range, resolve_run_range
    from upstream.session_manager_async import AsyncSessionManager

    def load_config() -> Config:
        try:
            config = Config()
        except DietwatchError as e:
            raise click.ClickException(str(e))
        configure_structlog(config.is_development(), config.LOG_LEVEL)
        logging.getLogger("asyncio").setLevel(logging.WARNING)
        logger.debug("configuration loaded", **config.summary())
        return config

    def execute_run(config: Config, run_range: RunRange, dry_run: bool, use_cache: bool,
                    bypass_cache: bool, trigger: str, metrics_file: Optional[str]) -> RunSummary:
        metrics = DietwatchMetrics()

        async def run():
            conductor, db = await build_conductor(config, dry_run=dry_run, metrics=metrics)
            try:
                return await conductor.run(
                    run_range, use_cache=use_cache, bypass_cache=bypass_cache, trigger=trigger
                )
            finally:
                await AsyncSessionManager.close_all()
                if db is not None:
                    await db.close()

        try:
            return asyncio.run(run())
        except DietwatchError as e:
            raise click.ClickException(str(e))
        finally:
            if metrics_file:
                metrics.write_textfile(metrics_file)

    async def with_db(config: Config, action):
        db = await Database.from_config(config)
        try:
            return await action(db)
        finally:
            await db.close()

    @click.group(invoke_without_command=True)
    @click.pass_context
    def cli(ctx):
        """Diet meeting ingestion: fetch transcripts and register summarization tasks"""
        if ctx.invoked_subcommand is None:
            click.echo(ctx.get_help())

    @cli.command("run")
    @click.option("--from", "from_date", type=YMD, help="First day (YYYY-MM-DD), defaults to today in JST")
    @click.option("--until", "until_date", type=YMD, help="Last day (YYYY-MM-DD), defaults to --from")
    @click.option("--dry-run", is_flag=True, help="Keep tasks in memory instead of PostgreSQL")
    @click.option("--no-cache", is_flag=True, help="Neither read nor write the response cache")
    @click.option("--refresh-cache", is_flag=True, help="Skip cache reads but store fresh responses")
    @click.option("--metrics-file", type=click.Path(dir_okay=False), help="Write Prometheus textfile here")
    def run_command(from_date, until_date, dry_run, no_cache, refresh_cache, metrics_file):
        """Ingest meetings for a date range"""
        config = load_config()
        try:
            run_range = resolve_run_range(from_date, until_date)
        except DietwatchError as e:
            raise click.BadParameter(str(e))

        summary = execute_run(
            config, run_range, dry_run, use_cache=not no_cache, bypass_cache=refresh_cache,
            trigger="manual", metrics_file=metrics_file,
        )
        click.echo(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))

    @cli.command("cron")
    @click.option("--dry-run", is_flag=True, help="Keep tasks in memory instead of PostgreSQL")
    @click.option("--metrics-file", type=click.Path(dir_okay=False), help="Write Prometheus textfile here")
    def cron_command(dry_run, metrics_file):
        """Scheduled run over the last three weeks (JST)"""
        config = load_config()
        summary = execute_run(
            config, default_cron_range(), dry_run, use_cache=False, bypass_cache=False,
            trigger="cron", metrics_file=metrics_file,
        )
        click.echo(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))

    @cli.command("init-db")
    def init_db():
        """Create task tables and indexes"""
        config = load_config()

        async def action(db):
            await db.init_schema()

        asyncio.run(with_db(config, action))
        click.echo("Schema initialized")

    @cli.command("pending")
    @click.option("--limit", default=10, show_default=True, type=click.IntRange(min=1))
    @click.option("--status", default="pending", show_default=True,
                  type=click.Choice(["ingested", "pending", "remake", "completed"]))
    def pending(limit, status):
        """List the oldest tasks in a status"""
        config = load_config()

        async def action(db):
            return await db.tasks.get_next_pending(limit, status=status)

        tasks = asyncio.run(with_db(config, action))
        if not tasks:
            click.echo(f"No {status} tasks")
            return
        click.echo(f"{'Task':<66} {'Mode':<13} {'Created':<26} Meeting")
        click.echo("-" * 120)
        for task in tasks:
            click.echo(
                f"{task.pk:<66} {task.processing_mode:<13} "
                f"{task.created_at.isoformat():<26} {task.meeting.name_of_meeting}"
            )

    @cli.command("chunk-ready")
    @click.argument("pk")
    @click.argument("chunk_id")
    def chunk_ready(pk, chunk_id):
        """Mark one chunk of a task ready"""
        config = load_config()

        async def action(db):
            return await db.tasks.mark_chunk_ready(pk, chunk_id)

        task = asyncio.run(with_db(config, action))
        if task is None:
            raise click.ClickException(f"Task not found: {pk}")
        click.echo(_task_json(task))

    @cli.command("task-succeeded")
    @click.argument("pk")
    def task_succeeded(pk):
        """Mark a task completed"""
        config = load_config()

        async def action(db):
            return await db.tasks.mark_task_succeeded(pk)

        task = asyncio.run(with_db(config, action))
        if task is None:
            raise click.ClickException(f"Task not found: {pk}")
        click.echo(f"{pk}: {task.status}")

    @cli.command("show")
    @click.argument("pk")
    def show(pk):
        """Print one task as JSON"""
        config = load_config()

        async def action(db):
            return await db.tasks.get_task(pk)

        task = asyncio.run(with_db(config, action))
        if task is None:
            raise click.ClickException(f"Task not found: {pk}")
        click.echo(_task_json(task))

    cli()


if __name__ == "__main__":
    main()
