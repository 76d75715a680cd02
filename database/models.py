"""
Database Models for dietwatch

Pydantic models for the durable task records.

An IssueTask is a tagged variant keyed by processing_mode:
- SingleChunkTask: the whole meeting fits one prompt, no chunks
- ChunkedTask: one ChunkItem per pack plus a reduce prompt over their results
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from config import get_logger

logger = get_logger(__name__).bind(component="database")

TaskStatus = Literal["ingested", "pending", "remake", "completed"]
ChunkStatus = Literal["notReady", "ready"]

TASK_STATUSES = ("ingested", "pending", "remake", "completed")
CHUNK_NOT_READY = "notReady"
CHUNK_READY = "ready"

PROCESSING_SINGLE_CHUNK = "single_chunk"
PROCESSING_CHUNKED = "chunked"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def chunk_id_for(position: int) -> str:
    return f"CHUNK#{position}"


class MeetingSummary(BaseModel):
    """Denormalized meeting info carried on every task"""
    model_config = ConfigDict(extra="ignore")

    issue_id: str
    name_of_meeting: str
    name_of_house: str
    date: str
    number_of_speeches: int
    session: Optional[int] = None


class ChunkItem(BaseModel):
    """One chunk prompt of a chunked task"""
    model_config = ConfigDict(extra="forbid")

    id: str
    prompt_key: str
    prompt_url: str
    result_url: str
    status: ChunkStatus = CHUNK_NOT_READY
    indices: List[int] = Field(default_factory=list)
    oversized: bool = False

    @property
    def is_ready(self) -> bool:
        return self.status == CHUNK_READY


class TaskBase(BaseModel):
    """Fields shared by both task variants"""
    model_config = ConfigDict(extra="forbid")

    pk: str
    status: TaskStatus
    llm: str = "gemini"
    llm_model: str
    retry_attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    prompt_url: str
    result_url: str
    meeting: MeetingSummary
    attached_assets_url: Optional[str] = None
    prompt_version: Optional[str] = None

    @field_validator("pk")
    @classmethod
    def validate_pk(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Task pk cannot be empty")
        return v.strip()

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SingleChunkTask(TaskBase):
    processing_mode: Literal["single_chunk"] = PROCESSING_SINGLE_CHUNK

    @property
    def chunks(self) -> List[ChunkItem]:
        return []


class ChunkedTask(TaskBase):
    processing_mode: Literal["chunked"] = PROCESSING_CHUNKED
    chunks: List[ChunkItem] = Field(min_length=1)

    @field_validator("chunks")
    @classmethod
    def validate_unique_chunk_ids(cls, v: List[ChunkItem]) -> List[ChunkItem]:
        ids = [chunk.id for chunk in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Chunk ids must be unique within a task")
        return v

    def get_chunk(self, chunk_id: str) -> Optional[ChunkItem]:
        for chunk in self.chunks:
            if chunk.id == chunk_id:
                return chunk
        return None

    @property
    def ready_count(self) -> int:
        return sum(1 for chunk in self.chunks if chunk.is_ready)

    @property
    def all_chunks_ready(self) -> bool:
        return all(chunk.is_ready for chunk in self.chunks)


IssueTask = Annotated[Union[SingleChunkTask, ChunkedTask], Field(discriminator="processing_mode")]

_issue_task_adapter: TypeAdapter = TypeAdapter(IssueTask)


def parse_task(data: Dict[str, Any]) -> Union[SingleChunkTask, ChunkedTask]:
    """Validate a dict (e.g. a stored row) into the right task variant"""
    return _issue_task_adapter.validate_python(data)
