"""Tests for ordered release of retrieval results."""

import pytest

from memoria.pipeline import OrderedRelease


class TestOrderedRelease:
    """Tests for OrderedRelease."""

    def test_in_order_completion(self):
        seq = OrderedRelease()
        a, b = seq.admit(), seq.admit()
        assert seq.complete(a, "a") == ["a"]
        assert seq.complete(b, "b") == ["b"]

    def test_fast_result_waits_behind_slow_one(self):
        """Seq 2 completing first is held until 0 and 1 are done."""
        seq = OrderedRelease()
        s0, s1, s2 = seq.admit(), seq.admit(), seq.admit()

        assert seq.complete(s2, "two") == []
        assert seq.waiting == 1
        assert seq.complete(s0, "zero") == ["zero"]
        assert seq.complete(s1, "one") == ["one", "two"]
        assert seq.waiting == 0

    def test_skipped_slot_releases_nothing(self):
        seq = OrderedRelease()
        s0, s1 = seq.admit(), seq.admit()
        assert seq.complete(s1, "one") == []
        assert seq.waiting == 1
        assert seq.complete(s0, None) == ["one"]
        assert seq.waiting == 0

    def test_skipped_slot_not_counted_as_waiting(self):
        seq = OrderedRelease()
        s0, s1, s2 = seq.admit(), seq.admit(), seq.admit()
        assert seq.complete(s1, None) == []
        assert seq.complete(s2, "two") == []
        assert seq.waiting == 1

    def test_duplicate_completion_rejected(self):
        seq = OrderedRelease()
        s0, s1 = seq.admit(), seq.admit()
        seq.complete(s1, "one")
        with pytest.raises(ValueError):
            seq.complete(s1, "again")
        seq.complete(s0, "zero")
        with pytest.raises(ValueError):
            seq.complete(s0, "again")

    def test_unadmitted_sequence_rejected(self):
        seq = OrderedRelease()
        with pytest.raises(ValueError):
            seq.complete(0, "x")

    def test_reset(self):
        seq = OrderedRelease()
        seq.admit()
        seq.complete(seq.admit(), "held")
        seq.reset()
        assert seq.admitted == 0
        assert seq.waiting == 0
        assert seq.admit() == 0
