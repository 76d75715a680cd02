"""
Tests for token packing

Greedy packing must keep speech order, never exceed the budget except for a
single oversized speech, and isolate oversized speeches in their own pack.
"""

import asyncio

import pytest

from conftest import LengthCounter, make_speech
from exceptions import ValidationError
from pipeline.models import IndexPack, OrderLen
from pipeline.packing import (
    build_order_lens,
    map_with_concurrency,
    materialize_chunks,
    pack_index_sets,
    pack_speeches,
)
from upstream.schemas import RawSpeechRecord


def order_lens(*lengths):
    return [OrderLen(index=i, speech_id=f"S{i}", token_length=n) for i, n in enumerate(lengths)]


def speeches(*texts):
    return [RawSpeechRecord.model_validate(make_speech(i + 1, text)) for i, text in enumerate(texts)]


class TestPackIndexSets:
    def test_greedy_contiguous_packs(self):
        packs = pack_index_sets(order_lens(3, 4, 2, 5), 7)
        assert [p.indices for p in packs] == [[0, 1], [2, 3]]
        assert [p.total_len for p in packs] == [7, 7]
        assert not any(p.oversized for p in packs)

    def test_item_equal_to_budget_is_not_oversized(self):
        packs = pack_index_sets(order_lens(5, 5), 5)
        assert [p.indices for p in packs] == [[0], [1]]
        assert not any(p.oversized for p in packs)

    def test_oversized_item_isolated(self):
        packs = pack_index_sets(order_lens(2, 10, 3), 5)
        assert [p.indices for p in packs] == [[0], [1], [2]]
        assert [p.oversized for p in packs] == [False, True, False]
        assert packs[1].total_len == 10

    def test_oversized_flushes_current_pack(self):
        packs = pack_index_sets(order_lens(1, 1, 9, 1, 1), 4)
        assert [p.indices for p in packs] == [[0, 1], [2], [3, 4]]

    def test_every_index_appears_once_in_order(self):
        packs = pack_index_sets(order_lens(4, 1, 7, 2, 2, 8, 1, 3), 6)
        flattened = [i for p in packs for i in p.indices]
        assert flattened == list(range(8))
        for pack in packs:
            assert pack.oversized or pack.total_len <= 6

    def test_speech_ids_follow_indices(self):
        packs = pack_index_sets(order_lens(1, 1, 1), 2)
        assert [p.speech_ids for p in packs] == [["S0", "S1"], ["S2"]]

    def test_zero_length_items_pack_together(self):
        packs = pack_index_sets(order_lens(0, 0, 0), 1)
        assert [p.indices for p in packs] == [[0, 1, 2]]

    def test_empty_input(self):
        assert pack_index_sets([], 10) == []

    def test_float_budget_accepted(self):
        packs = pack_index_sets(order_lens(3, 4), 7.5)
        assert [p.indices for p in packs] == [[0, 1]]

    @pytest.mark.parametrize("budget", [0, -1, float("inf"), float("nan"), True, "10", None])
    def test_invalid_budget_rejected(self, budget):
        with pytest.raises(ValidationError):
            pack_index_sets(order_lens(1, 2), budget)


class TestIndexPackSpan:
    def test_range_span(self):
        assert IndexPack(indices=[0, 1, 2]).span == "0-2"

    def test_single_index_span(self):
        assert IndexPack(indices=[7]).span == "7"


class TestMapWithConcurrency:
    async def test_results_follow_input_order(self):
        async def worker(delay, index):
            await asyncio.sleep(delay)
            return index

        results = await map_with_concurrency([0.03, 0.0, 0.02, 0.01], 4, worker)
        assert results == [0, 1, 2, 3]

    async def test_limit_bounds_in_flight_workers(self):
        in_flight = 0
        peak = 0

        async def worker(item, index):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            return item * 2

        results = await map_with_concurrency(list(range(10)), 3, worker)
        assert results == [i * 2 for i in range(10)]
        assert peak <= 3

    async def test_worker_error_propagates(self):
        async def worker(item, index):
            if item == 2:
                raise RuntimeError("boom")
            return item

        with pytest.raises(RuntimeError):
            await map_with_concurrency([1, 2, 3], 2, worker)

    async def test_empty_items(self):
        async def worker(item, index):
            return item

        assert await map_with_concurrency([], 4, worker) == []


class TestBuildAndPack:
    async def test_order_lens_count_each_speech_once(self):
        counter = LengthCounter()
        records = speeches("aaa", "b", "cc")

        lens = await build_order_lens(records, counter.count, concurrency=2)

        assert [(o.index, o.speech_id, o.token_length) for o in lens] == [
            (0, "S001", 3),
            (1, "S002", 1),
            (2, "S003", 2),
        ]
        assert sorted(counter.calls) == ["aaa", "b", "cc"]

    async def test_pack_speeches_and_materialize(self):
        counter = LengthCounter()
        records = speeches("aaaa", "bbb", "cc", "dddddddddd")

        packs = await pack_speeches(records, 7, counter.count)
        chunks = materialize_chunks(packs, records)

        assert [p.indices for p in packs] == [[0, 1], [2], [3]]
        assert packs[2].oversized
        assert [[s.speech for s in chunk] for chunk in chunks] == [["aaaa", "bbb"], ["cc"], ["dddddddddd"]]

    def test_materialize_drops_out_of_range_indices(self):
        records = speeches("a", "b")
        chunks = materialize_chunks([IndexPack(indices=[1, 5])], records)
        assert [s.speech for s in chunks[0]] == ["b"]

    async def test_drifted_speech_fields_still_pack(self):
        counter = LengthCounter()
        records = [
            RawSpeechRecord.model_construct(speech_id=None, speech_order=1, speech="ab"),
            RawSpeechRecord.model_construct(speech_id=42, speech_order=2, speech=1234),
        ]

        lens = await build_order_lens(records, counter.count)
        packs = pack_index_sets(lens, 10)

        assert [(o.speech_id, o.token_length) for o in lens] == [(None, 2), ("42", 4)]
        assert packs[0].speech_ids == [None, "42"]
        assert sorted(counter.calls) == ["1234", "ab"]
