"""Tests for needle parsing and packing."""

import pytest

from knitsketch.knitout.needle import LEFT, RIGHT, Needle


class TestNeedle:
    def test_parse(self):
        assert Needle.parse("f10") == Needle("f", 10)
        assert Needle.parse("bs-3") == Needle("bs", -3)
        assert Needle.parse("b+2") == Needle("b", 2)

    def test_parse_invalid(self):
        for text in ["x1", "f", "f1.5", "fb2"]:
            with pytest.raises(ValueError):
                Needle.parse(text)

    def test_b32_round_trip(self):
        for needle in [Needle("f", 0), Needle("b", 17), Needle("fs", -5), Needle("bs", -1)]:
            assert Needle.from_b32(needle.to_b32()) == needle

    def test_b32_layout(self):
        assert Needle("b", 3).to_b32() == (3 << 2) | 1
        assert Needle("fs", 1).to_b32() == (1 << 2) | 2

    def test_other_side_with_racking(self):
        assert Needle("f", 5).other_side(2) == Needle("b", 3)
        assert Needle("b", 3).other_side(2) == Needle("f", 5)

    def test_racking_to(self):
        assert Needle("f", 5).racking_to(Needle("b", 3)) == 2
        assert Needle("b", 3).racking_to(Needle("f", 5)) == 2
        with pytest.raises(ValueError):
            Needle("f", 1).racking_to(Needle("fs", 1))

    def test_dir_to(self):
        assert Needle("f", 1).dir_to(Needle("f", 4)) == RIGHT
        assert Needle("f", 4).dir_to(Needle("b", 1)) == LEFT

    def test_str(self):
        assert str(Needle("bs", -2)) == "bs-2"

    def test_slider_hook(self):
        assert Needle("f", 2).to_slider() == Needle("fs", 2)
        assert Needle("bs", 2).to_hook() == Needle("b", 2)
