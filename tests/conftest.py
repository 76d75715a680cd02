"""
Shared fixtures and payload builders for the dietwatch test suite

Payload builders produce meetings API JSON (camelCase) so tests exercise the
same normalization path as live responses.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import pytest

from config import Config
from database.models import ChunkItem, ChunkedTask, MeetingSummary, SingleChunkTask, chunk_id_for
from notifications.webhook import NullNotifier
from pipeline.models import BudgetContext, RunRange
from storage.object_store import LocalObjectStore
from upstream.normalizer import ResponseNormalizer
from upstream.range_fetcher import FetchOptions, RangeFetcher

BASE_TIME = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


def make_speech(order: int, text: str = "発言", speaker: str = "議員", **overrides) -> Dict[str, Any]:
    speech = {
        "speechID": f"S{order:03d}",
        "speechOrder": order,
        "speaker": speaker,
        "speakerYomi": "ぎいん",
        "speakerGroup": "無所属",
        "speakerPosition": None,
        "speakerRole": None,
        "speech": text,
        "startPage": 1,
        "createTime": "2025-01-15T10:00:00Z",
        "updateTime": "2025-01-15T10:00:00Z",
        "speechURL": f"https://example.org/speech/{order}",
    }
    speech.update(overrides)
    return speech


def make_meeting(
    issue_id: str,
    speeches: Optional[List[Dict[str, Any]]] = None,
    date: str = "2025-01-15",
    **overrides,
) -> Dict[str, Any]:
    meeting = {
        "issueID": issue_id,
        "imageKind": "会議録",
        "searchObject": 0,
        "session": 217,
        "nameOfHouse": "衆議院",
        "nameOfMeeting": "予算委員会",
        "issue": "第1号",
        "date": date,
        "closing": None,
        "speechRecord": speeches if speeches is not None else [make_speech(1), make_speech(2)],
        "meetingURL": f"https://example.org/meeting/{issue_id}",
        "pdfURL": None,
    }
    meeting.update(overrides)
    return meeting


def make_page(
    meetings: List[Dict[str, Any]],
    number_of_records: Optional[int] = None,
    start_record: int = 1,
) -> Dict[str, Any]:
    return {
        "numberOfRecords": len(meetings) if number_of_records is None else number_of_records,
        "numberOfReturn": len(meetings),
        "startRecord": start_record,
        "meetingRecord": meetings,
    }


def query_of(url: str) -> Dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


class ScriptedRangeFetcher(RangeFetcher):
    """RangeFetcher whose HTTP layer is replaced by a handler(query) -> payload

    The handler may raise UpstreamError subclasses to simulate failures.
    """

    def __init__(self, handler: Callable[[Dict[str, str]], Any], **kwargs):
        kwargs.setdefault("normalizer", ResponseNormalizer())
        super().__init__(**kwargs)
        self.handler = handler
        self.requested: List[Dict[str, str]] = []

    async def _get_json(self, url: str) -> Any:
        query = query_of(url)
        self.requested.append(query)
        return self.handler(query)


class LengthCounter:
    """Token counter that counts characters and records every call"""

    def __init__(self):
        self.calls: List[str] = []

    async def count(self, text: str) -> int:
        self.calls.append(text)
        return len(text)


def make_summary(issue_id: str = "121705253X00120250115") -> MeetingSummary:
    return MeetingSummary(
        issue_id=issue_id,
        name_of_meeting="予算委員会",
        name_of_house="衆議院",
        date="2025-01-15",
        number_of_speeches=3,
        session=217,
    )


def make_single_task(pk: str, created_at: datetime = BASE_TIME, status: str = "pending") -> SingleChunkTask:
    return SingleChunkTask(
        pk=pk,
        status=status,
        llm_model="gemini-2.5-flash",
        created_at=created_at,
        updated_at=created_at,
        prompt_url=f"s3://test-bucket/prompts/reduce/{pk}_direct.json",
        result_url=f"s3://test-bucket/results/{pk}_reduce.json",
        meeting=make_summary(pk),
    )


def make_chunked_task(
    pk: str,
    chunk_count: int = 3,
    created_at: datetime = BASE_TIME,
    status: str = "ingested",
) -> ChunkedTask:
    chunks = [
        ChunkItem(
            id=chunk_id_for(position),
            prompt_key=f"prompts/{pk}_{position}.json",
            prompt_url=f"s3://test-bucket/prompts/{pk}_{position}.json",
            result_url=f"s3://test-bucket/results/{pk}_{position}_result.json",
            indices=[position],
        )
        for position in range(chunk_count)
    ]
    return ChunkedTask(
        pk=pk,
        status=status,
        llm_model="gemini-2.5-flash",
        created_at=created_at,
        updated_at=created_at,
        prompt_url=f"s3://test-bucket/prompts/reduce/{pk}.json",
        result_url=f"s3://test-bucket/results/{pk}_reduce.json",
        meeting=make_summary(pk),
        chunks=chunks,
    )


def minutes_after(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


@pytest.fixture
def notifier():
    return NullNotifier()


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(str(tmp_path / "objects"), "test-bucket")


@pytest.fixture
def fast_options():
    return FetchOptions(max_records_per_page=10, chunk_days=7, request_interval_ms=0, max_pages=50)


@pytest.fixture
def run_range():
    return RunRange(from_date="2025-01-15", until_date="2025-01-15")


@pytest.fixture
def budget_context(run_range):
    return BudgetContext(
        available_tokens=100,
        max_input_tokens=1000,
        llm_model="gemini-2.5-flash",
        run_id="testrun",
        run_range=run_range,
    )


@pytest.fixture
def config(tmp_path):
    config = Config()
    config.API_ENDPOINT = "https://example.org/api/meeting"
    config.REQUEST_INTERVAL_MS = 0
    config.CACHE_FILE = None
    config.STORAGE_ROOT = str(tmp_path / "objects")
    config.PROMPT_BUCKET = "test-bucket"
    config.TASK_ID_MODE = "issue_id"
    config.TOKEN_COUNT_CONCURRENCY = 4
    return config
