"""
Async webhook notifications (Discord-compatible embeds).

Provides run-level alerts for:
- Run errors and warnings
- Upstream schema violations
- Per-meeting task write failures
- Batch summary of newly created tasks

Delivery is fire-and-forget: every method logs and returns False on failure,
never raises into the ingestion run.
"""

import httpx
from typing import Any, Dict, List, Optional, Protocol

from config import get_logger
from pipeline.models import RunRange

logger = get_logger(__name__).bind(component="notifications")

COLOR_ERROR = 0xE74C3C
COLOR_WARN = 0xF1C40F
COLOR_BATCH = 0x2ECC71

FIELD_LIMIT = 900
ISSUE_PREVIEW_COUNT = 5


def format_error(error: Any) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"[:FIELD_LIMIT]
    return str(error)[:FIELD_LIMIT]


class Notifier(Protocol):
    async def notify_schema_violation(self, message: str, issues: List[Dict[str, str]]) -> bool: ...

    async def notify_run_error(self, message: str, run_range: Optional[RunRange] = None, error: Any = None) -> bool: ...

    async def notify_run_warning(self, message: str, run_range: Optional[RunRange] = None, detail: Optional[str] = None) -> bool: ...

    async def notify_tasks_created(
        self,
        run_range: RunRange,
        meetings_processed: int,
        created_count: int,
        existing_count: int,
        issue_ids: List[str],
    ) -> bool: ...

    async def notify_task_write_failure(self, issue_id: str, error: Any, task: Any = None) -> bool: ...


class NullNotifier:
    """Records calls instead of sending them"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify_schema_violation(self, message, issues):
        self.sent.append({"kind": "schema_violation", "message": message, "issues": issues})
        return True

    async def notify_run_error(self, message, run_range=None, error=None):
        self.sent.append({"kind": "run_error", "message": message, "range": run_range, "error": error})
        return True

    async def notify_run_warning(self, message, run_range=None, detail=None):
        self.sent.append({"kind": "run_warning", "message": message, "range": run_range, "detail": detail})
        return True

    async def notify_tasks_created(self, run_range, meetings_processed, created_count, existing_count, issue_ids):
        self.sent.append({
            "kind": "tasks_created",
            "range": run_range,
            "meetings_processed": meetings_processed,
            "created_count": created_count,
            "existing_count": existing_count,
            "issue_ids": list(issue_ids),
        })
        return True

    async def notify_task_write_failure(self, issue_id, error, task=None):
        self.sent.append({"kind": "task_write_failure", "issue_id": issue_id, "error": error})
        return True

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["kind"] == kind]


class WebhookNotifier:
    """Discord webhook notifier using httpx

    Args:
        environment: Environment label shown on every message
        error_webhook: Destination for errors (and last-resort fallback)
        warn_webhook: Destination for warnings, falls back to error_webhook
        batch_webhook: Destination for batch summaries, falls back to warn then error
        client: Shared httpx.AsyncClient (a short-lived one is opened per send otherwise)
    """

    def __init__(
        self,
        environment: str,
        error_webhook: Optional[str] = None,
        warn_webhook: Optional[str] = None,
        batch_webhook: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10,
    ):
        self.environment = environment
        self.error_webhook = error_webhook
        self.warn_webhook = warn_webhook or error_webhook
        self.batch_webhook = batch_webhook or warn_webhook or error_webhook
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "WebhookNotifier":
        return cls(
            environment=config.ENVIRONMENT,
            error_webhook=config.ERROR_WEBHOOK,
            warn_webhook=config.WARN_WEBHOOK,
            batch_webhook=config.BATCH_WEBHOOK,
        )

    def _base_fields(self, run_range: Optional[RunRange] = None) -> List[Dict[str, Any]]:
        fields = [{"name": "Environment", "value": self.environment, "inline": True}]
        if run_range is not None:
            fields.append({"name": "Range", "value": f"{run_range.from_date} → {run_range.until_date}", "inline": True})
        return fields

    async def _send(
        self,
        webhook: Optional[str],
        label: str,
        title: str,
        content: str,
        color: int,
        fields: List[Dict[str, Any]],
    ) -> bool:
        if not webhook:
            logger.debug("no webhook configured, skipping notification", label=label, title=title)
            return False

        body = {
            "content": content,
            "embeds": [
                {
                    "title": title[:256],
                    "color": color,
                    "fields": fields[:25],
                    "footer": {"text": f"dietwatch · {label}"},
                }
            ],
        }

        try:
            if self.client is not None:
                response = await self.client.post(webhook, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(webhook, json=body, timeout=self.timeout)
            response.raise_for_status()
            logger.info("notification sent", label=label, title=title[:50])
            return True
        except httpx.HTTPError as e:
            logger.error("notification send failed", label=label, error=str(e))
            return False

    async def notify_schema_violation(self, message: str, issues: List[Dict[str, str]]) -> bool:
        fields = self._base_fields()
        fields.append({"name": "Issues", "value": str(len(issues)), "inline": True})
        fields.append({"name": "Detail", "value": (message or "unknown violation")[:FIELD_LIMIT]})
        return await self._send(
            self.warn_webhook,
            label="data-collection-schema",
            title="Meetings API schema violation",
            content=":warning: Upstream payload did not match the expected schema",
            color=COLOR_WARN,
            fields=fields,
        )

    async def notify_run_error(self, message: str, run_range: Optional[RunRange] = None, error: Any = None) -> bool:
        fields = self._base_fields(run_range)
        if error is not None:
            fields.append({"name": "Error", "value": format_error(error)})
        return await self._send(
            self.error_webhook,
            label="data-collection-error",
            title=message,
            content=":rotating_light: Ingestion error",
            color=COLOR_ERROR,
            fields=fields,
        )

    async def notify_run_warning(self, message: str, run_range: Optional[RunRange] = None, detail: Optional[str] = None) -> bool:
        fields = self._base_fields(run_range)
        if detail:
            fields.append({"name": "Detail", "value": detail[:FIELD_LIMIT]})
        return await self._send(
            self.warn_webhook,
            label="data-collection-warning",
            title=message,
            content=":warning: Ingestion warning",
            color=COLOR_WARN,
            fields=fields,
        )

    async def notify_tasks_created(
        self,
        run_range: RunRange,
        meetings_processed: int,
        created_count: int,
        existing_count: int,
        issue_ids: List[str],
    ) -> bool:
        if created_count <= 0:
            return False

        fields = self._base_fields(run_range)
        fields.extend([
            {"name": "New tasks", "value": str(created_count), "inline": True},
            {"name": "Meetings processed", "value": str(meetings_processed), "inline": True},
            {"name": "Existing tasks", "value": str(existing_count), "inline": True},
        ])
        if issue_ids:
            preview = ", ".join(issue_ids[:ISSUE_PREVIEW_COUNT])
            suffix = " …" if len(issue_ids) > ISSUE_PREVIEW_COUNT else ""
            fields.append({"name": "Issue IDs", "value": f"{preview}{suffix}"})

        return await self._send(
            self.batch_webhook,
            label="data-collection-batch",
            title="Task registration completed",
            content=f":white_check_mark: Registered {created_count} tasks",
            color=COLOR_BATCH,
            fields=fields,
        )

    async def notify_task_write_failure(self, issue_id: str, error: Any, task: Any = None) -> bool:
        fields = [{"name": "Issue ID", "value": issue_id or "unknown", "inline": True}]
        if task is not None:
            fields.extend([
                {"name": "Task ID", "value": task.pk, "inline": True},
                {"name": "LLM", "value": f"{task.llm}/{task.llm_model}", "inline": True},
                {"name": "Mode", "value": task.processing_mode, "inline": True},
                {"name": "Meeting", "value": task.meeting.name_of_meeting},
            ])
        fields.append({"name": "Error", "value": format_error(error)})
        return await self._send(
            self.warn_webhook,
            label="data-collection-task-write-failed",
            title="Task write failed",
            content=":warning: Failed to persist task",
            color=COLOR_WARN,
            fields=fields,
        )
