"""Tests for per-needle yarn occupancy bits."""

import pytest

from knitsketch.machine.yarnstack import (
    BackAction,
    YarnStack,
    as_back_bits,
    as_front_bits,
    as_yarn_list,
)


class TestBitHelpers:
    def test_front_bits(self):
        assert as_front_bits([1, 3]) == 0b101
        assert as_front_bits(["10"]) == 1 << 9

    def test_back_bits(self):
        assert as_back_bits([1], BackAction.KNIT) == 0b11
        assert as_back_bits([2], "tuck") == 0b10 << 2

    def test_back_bits_per_yarn(self):
        assert as_back_bits([1, 2], [BackAction.MISS, BackAction.KNIT]) == 0b1101

    def test_yarn_list_from_mask(self):
        assert as_yarn_list(0b1010) == [2, 4]

    def test_invalid_carrier(self):
        with pytest.raises(ValueError):
            as_front_bits([11])

    def test_invalid_action(self):
        with pytest.raises(ValueError, match="Unsupported"):
            as_back_bits([1], "float")


class TestYarnStack:
    def test_set_front_yarns(self):
        ys = YarnStack()
        ys.set_front_yarns([1, 2])
        assert ys.front_yarns() == [1, 2]
        assert ys.yarns == {1, 2}

    def test_front_to_back_becomes_miss(self):
        ys = YarnStack()
        ys.set_front_yarns([1, 2])
        ys.set_front_yarns([2])
        assert ys.front_yarns() == [2]
        assert ys.back_yarn_action(1) == BackAction.MISS
        assert ys.has_yarn(1)

    def test_front_to_back_without_miss(self):
        ys = YarnStack()
        ys.set_front_yarns([1, 2])
        ys.set_front_yarns([2], miss_to_back=False)
        assert ys.has_front_yarn(1)

    def test_back_miss_never_overrides_front(self):
        ys = YarnStack()
        ys.set_front_yarns([3])
        ys.set_back_yarns([3], BackAction.MISS)
        assert ys.back_yarn_action(3) == BackAction.NONE
        assert ys.has_front_yarn(3)

    def test_back_knit_applies_with_front(self):
        ys = YarnStack()
        ys.set_front_yarns([3])
        ys.set_back_yarns([3], BackAction.KNIT)
        assert ys.back_yarn_action(3) == BackAction.KNIT

    def test_front_back(self):
        ys = YarnStack()
        ys.set_front_back_yarns([4])
        assert ys.has_front_yarn(4)
        assert ys.back_yarn_action(4) == BackAction.KNIT

    def test_allocate_adds_missing_as_miss(self):
        ys = YarnStack()
        ys.set_front_yarns([1])
        ys.allocate_yarns([1, 5])
        assert ys.back_yarn_action(5) == BackAction.MISS
        assert ys.back_yarn_action(1) == BackAction.NONE

    def test_reset(self):
        ys = YarnStack()
        ys.set_front_yarns([1, 2])
        ys.reset_front_yarns([])
        assert not ys.has_yarn()
        ys.reset_back_yarns([6], BackAction.TUCK)
        assert ys.back_yarns() == [6]
        assert ys.yarns == {6}

    def test_yarn_mask(self):
        ys = YarnStack()
        ys.set_front_yarns([1])
        ys.set_back_yarns([3], BackAction.TUCK)
        assert ys.yarn_mask == 0b101

    def test_commit_callback_on_every_mutation(self):
        seen = []
        ys = YarnStack(apply_func=lambda s: seen.append((s.fyarns, s.byarns)))
        ys.set_front_yarns([1])
        ys.set_back_yarns([2])
        ys.reset_front_yarns([], skip_commit=True)
        assert seen == [(0b1, 0), (0b1, 0b01 << 2)]

    def test_invalid_initial_bits(self):
        with pytest.raises(ValueError):
            YarnStack(fyarns=1 << 10)

    def test_initial_bits_populate_set(self):
        ys = YarnStack(fyarns=0b1, byarns=0b11 << 4)
        assert ys.yarns == {1, 3}
