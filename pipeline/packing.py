"""
Token Packing - Group ordered speeches into prompt-sized packs

Token lengths are counted once per speech (bounded concurrency, results kept
in input order), then a single greedy left-to-right pass groups contiguous
speeches so that each pack fits the budget. A speech that alone exceeds the
budget becomes its own oversized pack.
"""

import asyncio
import math
from numbers import Real
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from config import get_logger
from exceptions import ValidationError
from pipeline.models import IndexPack, OrderLen
from upstream.schemas import RawSpeechRecord

logger = get_logger(__name__).bind(component="packing")

T = TypeVar("T")
R = TypeVar("R")

CountFn = Callable[[str], Awaitable[int]]

DEFAULT_COUNT_CONCURRENCY = 8


async def map_with_concurrency(
    items: Sequence[T],
    limit: int,
    worker: Callable[[T, int], Awaitable[R]],
) -> List[R]:
    """Run worker over items with at most `limit` in flight.

    Result slots are allocated by input index, so results[i] always belongs
    to items[i] regardless of completion order. The first worker exception
    propagates and cancels the remaining workers.
    """
    results: List[Optional[R]] = [None] * len(items)
    pending = iter(enumerate(items))

    async def run():
        for index, item in pending:
            results[index] = await worker(item, index)

    runner_count = max(1, min(int(limit), len(items))) if items else 0
    if runner_count:
        await asyncio.gather(*(run() for _ in range(runner_count)))
    return results  # type: ignore[return-value]


def speech_text(speech: RawSpeechRecord) -> str:
    value = getattr(speech, "speech", None)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def speech_id_of(speech: RawSpeechRecord) -> Optional[str]:
    value = getattr(speech, "speech_id", None)
    if value is None or isinstance(value, str):
        return value
    return str(value)


async def build_order_lens(
    speeches: Sequence[RawSpeechRecord],
    count_fn: CountFn,
    concurrency: int = DEFAULT_COUNT_CONCURRENCY,
) -> List[OrderLen]:
    """Count tokens for every speech, returning OrderLen in speech order"""
    counts = await map_with_concurrency(
        speeches,
        concurrency,
        lambda speech, _index: count_fn(speech_text(speech)),
    )
    return [
        OrderLen(index=index, speech_id=speech_id_of(speech), token_length=counts[index])
        for index, speech in enumerate(speeches)
    ]


def _check_budget(budget) -> None:
    if isinstance(budget, bool) or not isinstance(budget, Real) or not math.isfinite(budget) or budget <= 0:
        raise ValidationError("Packing budget must be a finite positive number", field="budget", value=budget)


def pack_index_sets(items: Sequence[OrderLen], budget: int) -> List[IndexPack]:
    """Greedy packer over OrderLen in input order.

    - item longer than budget: flush current pack, emit item alone as oversized
    - item would overflow a non-empty pack: flush, start a new pack with it
    - otherwise append

    Raises:
        ValidationError: budget is not a finite positive number
    """
    _check_budget(budget)

    packs: List[IndexPack] = []
    indices: List[int] = []
    speech_ids: List[Optional[str]] = []
    total = 0

    def flush():
        nonlocal indices, speech_ids, total
        if indices:
            packs.append(IndexPack(indices=indices, speech_ids=speech_ids, total_len=total))
        indices, speech_ids, total = [], [], 0

    for item in items:
        if item.token_length > budget:
            flush()
            packs.append(
                IndexPack(
                    indices=[item.index],
                    speech_ids=[item.speech_id],
                    total_len=item.token_length,
                    oversized=True,
                )
            )
            continue

        if indices and total + item.token_length > budget:
            flush()

        indices.append(item.index)
        speech_ids.append(item.speech_id)
        total += item.token_length

    flush()
    return packs


def materialize_chunks(packs: Sequence[IndexPack], speeches: Sequence[RawSpeechRecord]) -> List[List[RawSpeechRecord]]:
    """Map each pack's indices back to speech records (out-of-range indices are dropped)"""
    return [
        [speeches[i] for i in pack.indices if 0 <= i < len(speeches)]
        for pack in packs
    ]


async def pack_speeches(
    speeches: Sequence[RawSpeechRecord],
    budget: int,
    count_fn: CountFn,
    concurrency: int = DEFAULT_COUNT_CONCURRENCY,
) -> List[IndexPack]:
    """Count, then pack. Convenience for callers that do not need the OrderLen list."""
    order_lens = await build_order_lens(speeches, count_fn, concurrency)
    packs = pack_index_sets(order_lens, budget)
    logger.debug(
        "packed speeches",
        speeches=len(speeches),
        packs=len(packs),
        oversized=sum(1 for p in packs if p.oversized),
        budget=budget,
    )
    return packs
