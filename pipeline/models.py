"""
Pipeline Models - Value types that flow between ingestion stages

RunRange travels from the CLI into the RangeFetcher.
OrderLen and IndexPack carry token lengths from counting into packing
and from packing into the plan builder.
"""

import re
from dataclasses import asdict, field
from typing import Any, Dict, List, Optional

from pydantic import model_validator
from pydantic.dataclasses import dataclass

YMD_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class RunRange:
    """Inclusive calendar-date window, both ends as YYYY-MM-DD"""
    from_date: str
    until_date: str

    @model_validator(mode="after")
    def _check_order(self) -> "RunRange":
        for value in (self.from_date, self.until_date):
            if not YMD_PATTERN.match(value):
                raise ValueError(f"Expected YYYY-MM-DD, got {value!r}")
        if self.from_date > self.until_date:
            raise ValueError(f"from_date {self.from_date} is after until_date {self.until_date}")
        return self

    def __str__(self) -> str:
        return f"{self.from_date}..{self.until_date}"

    def to_dict(self) -> Dict[str, str]:
        return {"from": self.from_date, "until": self.until_date}


@dataclass(frozen=True)
class OrderLen:
    """Token length of one speech, addressed by its index in the meeting"""
    index: int
    speech_id: Optional[str]
    token_length: int


@dataclass
class IndexPack:
    """One prompt-sized group of contiguous speech indices"""
    indices: List[int] = field(default_factory=list)
    speech_ids: List[Optional[str]] = field(default_factory=list)
    total_len: int = 0
    oversized: bool = False

    @property
    def span(self) -> str:
        """Index span used in object-storage keys, e.g. '0-4' or '7'"""
        if not self.indices:
            return "empty"
        first, last = self.indices[0], self.indices[-1]
        return str(first) if first == last else f"{first}-{last}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BudgetContext:
    """Per-run token budget shared read-only by every meeting in the run"""
    available_tokens: int
    max_input_tokens: int
    llm_model: str
    run_id: str
    run_range: RunRange
