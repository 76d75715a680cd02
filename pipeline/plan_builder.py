"""
Task Plan Builder - Turn one packed meeting into a task record

Decision rule:
- exactly one pack and it is not oversized -> single_chunk plan
- otherwise -> chunked plan, one ChunkItem per pack plus a reduce prompt

Both plans write the attached-assets payload (speaker metadata keyed by
speechOrder) once per meeting. Prompt payloads never embed run-specific
values, so rebuilding a meeting rewrites identical bytes at identical keys.

The builder only writes to object storage. Persisting the returned task is
the caller's job.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from config import get_logger
from database.id_generation import task_id_for
from database.models import (
    CHUNK_NOT_READY,
    ChunkItem,
    ChunkedTask,
    MeetingSummary,
    SingleChunkTask,
    chunk_id_for,
    utcnow,
)
from pipeline.models import BudgetContext, IndexPack
from pipeline.packing import CountFn, DEFAULT_COUNT_CONCURRENCY, materialize_chunks, pack_speeches
from pipeline.prompts import (
    CHUNK_PROMPT,
    MODE_CHUNK,
    MODE_REDUCE,
    MODE_SINGLE_CHUNK,
    PROMPT_VERSION,
    REDUCE_PROMPT,
    SINGLE_CHUNK_PROMPT,
)
from pipeline.protocols import MetricsCollector, NullMetrics
from storage.object_store import ObjectStore, put_json
from upstream.schemas import RawMeetingRecord, RawSpeechRecord

logger = get_logger(__name__).bind(component="planner")

PlannedTask = Union[SingleChunkTask, ChunkedTask]

SKIP_MISSING_ISSUE_ID = "missing_issue_id"
SKIP_NO_SPEECHES = "no_speeches"
SKIP_NO_PACKS = "no_packs"


def attached_assets_key(issue_id: str) -> str:
    return f"attachedAssets/{issue_id}.json"


def chunk_prompt_key(issue_id: str, pack: IndexPack) -> str:
    return f"prompts/{issue_id}_{pack.span}.json"


def chunk_result_key(issue_id: str, pack: IndexPack) -> str:
    return f"results/{issue_id}_{pack.span}_result.json"


def reduce_prompt_key(issue_id: str) -> str:
    return f"prompts/reduce/{issue_id}.json"


def direct_prompt_key(issue_id: str) -> str:
    return f"prompts/reduce/{issue_id}_direct.json"


def reduce_result_key(issue_id: str) -> str:
    return f"results/{issue_id}_reduce.json"


def meeting_issue_id(meeting: RawMeetingRecord) -> str:
    value = getattr(meeting, "issue_id", None)
    return str(value).strip() if value is not None else ""


def meeting_speeches(meeting: RawMeetingRecord) -> List[RawSpeechRecord]:
    return list(getattr(meeting, "speech_record", None) or [])


def _text(value: Any, fallback: str) -> str:
    if value is None or value == "":
        return fallback
    text = value if isinstance(value, str) else str(value)
    return text.strip() or fallback


def _speech_payload(speech: RawSpeechRecord) -> Dict[str, Any]:
    return {
        "speechID": speech.speech_id,
        "speechOrder": speech.speech_order,
        "speaker": speech.speaker,
        "speakerGroup": speech.speaker_group,
        "speakerPosition": speech.speaker_position,
        "speakerRole": speech.speaker_role,
        "speech": speech.speech,
    }


class TaskPlanBuilder:
    """Build single_chunk or chunked task plans

    Args:
        store: Object store for prompt and asset payloads
        task_id_mode: "issue_id" or "uid"
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        store: ObjectStore,
        task_id_mode: str = "issue_id",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.task_id_mode = task_id_mode
        self.metrics = metrics or NullMetrics()

    def skip_reason(self, meeting: RawMeetingRecord) -> Optional[str]:
        """Why a meeting cannot be planned before any tokens are counted, if at all"""
        if not meeting_issue_id(meeting):
            return SKIP_MISSING_ISSUE_ID
        if not meeting_speeches(meeting):
            return SKIP_NO_SPEECHES
        return None

    def _skip(self, meeting: RawMeetingRecord, reason: str) -> None:
        logger.warning(
            "skipping meeting",
            reason=reason,
            issue_id=meeting_issue_id(meeting) or None,
            date=getattr(meeting, "date", None),
            name_of_meeting=getattr(meeting, "name_of_meeting", None),
        )
        self.metrics.meetings_skipped.labels(reason=reason).inc()
        return None

    def task_id(self, meeting: RawMeetingRecord) -> str:
        return task_id_for(
            meeting_issue_id(meeting),
            getattr(meeting, "session", None),
            getattr(meeting, "name_of_house", None),
            self.task_id_mode,
        )

    def meeting_summary(self, meeting: RawMeetingRecord) -> MeetingSummary:
        session = getattr(meeting, "session", None)
        return MeetingSummary(
            issue_id=meeting_issue_id(meeting),
            name_of_meeting=_text(getattr(meeting, "name_of_meeting", None), "Unknown meeting"),
            name_of_house=_text(getattr(meeting, "name_of_house", None), "Unknown house"),
            date=_text(getattr(meeting, "date", None), ""),
            number_of_speeches=len(meeting_speeches(meeting)),
            session=session if isinstance(session, int) and not isinstance(session, bool) else None,
        )

    async def build_for_meeting(
        self,
        meeting: RawMeetingRecord,
        budget_context: BudgetContext,
        count_fn: CountFn,
        concurrency: int = DEFAULT_COUNT_CONCURRENCY,
    ) -> Optional[PlannedTask]:
        """Count, pack and plan one meeting. Returns None when the meeting is skipped."""
        reason = self.skip_reason(meeting)
        if reason:
            return self._skip(meeting, reason)

        packs = await pack_speeches(
            meeting_speeches(meeting),
            budget_context.available_tokens,
            count_fn,
            concurrency,
        )
        return await self.build_plan(meeting, packs, budget_context)

    async def build_plan(
        self,
        meeting: RawMeetingRecord,
        packs: Sequence[IndexPack],
        budget_context: BudgetContext,
    ) -> Optional[PlannedTask]:
        reason = self.skip_reason(meeting)
        if reason:
            return self._skip(meeting, reason)
        if not packs:
            return self._skip(meeting, SKIP_NO_PACKS)

        issue_id = meeting_issue_id(meeting)
        speeches = meeting_speeches(meeting)
        summary = self.meeting_summary(meeting)
        pk = self.task_id(meeting)

        attached_assets_url = await self._write_attached_assets(issue_id, summary, speeches)

        if len(packs) == 1 and not packs[0].oversized:
            task = await self._build_single_chunk(
                pk, issue_id, summary, packs[0], speeches, budget_context, attached_assets_url
            )
        else:
            task = await self._build_chunked(
                pk, issue_id, summary, packs, speeches, budget_context, attached_assets_url
            )

        logger.info(
            "built task plan",
            pk=task.pk,
            issue_id=issue_id,
            processing_mode=task.processing_mode,
            speeches=len(speeches),
            chunks=len(task.chunks),
        )
        return task

    async def _write_attached_assets(
        self, issue_id: str, summary: MeetingSummary, speeches: Sequence[RawSpeechRecord]
    ) -> str:
        payload = {
            "issueID": issue_id,
            "nameOfMeeting": summary.name_of_meeting,
            "nameOfHouse": summary.name_of_house,
            "date": summary.date,
            "session": summary.session,
            "speakers": {str(speech.speech_order): speech.speaker_metadata() for speech in speeches},
        }
        return await put_json(self.store, attached_assets_key(issue_id), payload)

    async def _build_single_chunk(
        self,
        pk: str,
        issue_id: str,
        summary: MeetingSummary,
        pack: IndexPack,
        speeches: Sequence[RawSpeechRecord],
        budget_context: BudgetContext,
        attached_assets_url: str,
    ) -> SingleChunkTask:
        chunk_speeches = materialize_chunks([pack], speeches)[0]
        result_url = self.store.url_for(reduce_result_key(issue_id))
        payload = {
            "mode": MODE_SINGLE_CHUNK,
            "promptVersion": PROMPT_VERSION,
            "prompt": SINGLE_CHUNK_PROMPT,
            "meeting": summary.model_dump(mode="json"),
            "packIndices": pack.indices,
            "speechIds": pack.speech_ids,
            "totalTokens": pack.total_len,
            "speeches": [_speech_payload(s) for s in chunk_speeches],
            "attachedAssetsURL": attached_assets_url,
            "resultURL": result_url,
        }
        prompt_url = await put_json(self.store, direct_prompt_key(issue_id), payload)
        now = utcnow()
        return SingleChunkTask(
            pk=pk,
            status="pending",
            llm_model=budget_context.llm_model,
            created_at=now,
            updated_at=now,
            prompt_url=prompt_url,
            result_url=result_url,
            meeting=summary,
            attached_assets_url=attached_assets_url,
            prompt_version=PROMPT_VERSION,
        )

    async def _build_chunked(
        self,
        pk: str,
        issue_id: str,
        summary: MeetingSummary,
        packs: Sequence[IndexPack],
        speeches: Sequence[RawSpeechRecord],
        budget_context: BudgetContext,
        attached_assets_url: str,
    ) -> ChunkedTask:
        chunks: List[ChunkItem] = []
        materialized = materialize_chunks(packs, speeches)

        for position, (pack, chunk_speeches) in enumerate(zip(packs, materialized)):
            chunk_id = chunk_id_for(position)
            prompt_key = chunk_prompt_key(issue_id, pack)
            result_url = self.store.url_for(chunk_result_key(issue_id, pack))
            payload = {
                "mode": MODE_CHUNK,
                "promptVersion": PROMPT_VERSION,
                "prompt": CHUNK_PROMPT,
                "meeting": summary.model_dump(mode="json"),
                "chunkId": chunk_id,
                "chunkIndex": position,
                "chunkCount": len(packs),
                "packIndices": pack.indices,
                "speechIds": pack.speech_ids,
                "totalTokens": pack.total_len,
                "oversized": pack.oversized,
                "speeches": [_speech_payload(s) for s in chunk_speeches],
                "attachedAssetsURL": attached_assets_url,
                "resultURL": result_url,
            }
            prompt_url = await put_json(self.store, prompt_key, payload)
            self.metrics.chunks_written.labels(oversized=str(pack.oversized).lower()).inc()
            if pack.oversized:
                logger.warning(
                    "oversized speech isolated in its own chunk",
                    issue_id=issue_id,
                    chunk_id=chunk_id,
                    tokens=pack.total_len,
                    budget=budget_context.available_tokens,
                )
            chunks.append(
                ChunkItem(
                    id=chunk_id,
                    prompt_key=prompt_key,
                    prompt_url=prompt_url,
                    result_url=result_url,
                    status=CHUNK_NOT_READY,
                    indices=pack.indices,
                    oversized=pack.oversized,
                )
            )

        result_url = self.store.url_for(reduce_result_key(issue_id))
        reduce_payload = {
            "mode": MODE_REDUCE,
            "promptVersion": PROMPT_VERSION,
            "prompt": REDUCE_PROMPT,
            "meeting": summary.model_dump(mode="json"),
            "chunks": [
                {"chunkId": chunk.id, "resultURL": chunk.result_url, "packIndices": chunk.indices}
                for chunk in chunks
            ],
            "attachedAssetsURL": attached_assets_url,
            "resultURL": result_url,
        }
        prompt_url = await put_json(self.store, reduce_prompt_key(issue_id), reduce_payload)

        now = utcnow()
        return ChunkedTask(
            pk=pk,
            status="ingested",
            llm_model=budget_context.llm_model,
            created_at=now,
            updated_at=now,
            prompt_url=prompt_url,
            result_url=result_url,
            meeting=summary,
            attached_assets_url=attached_assets_url,
            prompt_version=PROMPT_VERSION,
            chunks=chunks,
        )
