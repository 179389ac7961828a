"""Tests for the Knitout instruction store and its text format."""

import pytest

from knitsketch.knitout.needle import LEFT, RIGHT, Needle
from knitsketch.knitout.store import (
    KNIT,
    NOOP,
    RACK,
    Knitout,
    KnitoutError,
    KnitoutStream,
    format_float,
)


def _sample() -> Knitout:
    k = Knitout()
    k.set_header("Machine", "SWG091N2")
    k.set_header("Gauge", "15")
    k.inhook(["1"])
    k.x_stitch_number(33)
    k.tuck(LEFT, Needle("f", 4), ["1"]).set_metadata(-1, 0)
    k.knit(RIGHT, "b2", ["1", "3"]).set_comment(-1, "cast-on")
    k.set_metadata(-1, 12)
    k.add_comment("section")
    k.rack(-1.25)
    k.xfer("f3", "b3")
    k.stitch(0.5, 30)
    k.split(RIGHT, "f1", "b1", ["2"])
    k.miss(LEFT, "f0", ["2"])
    k.x_presser_mode("auto")
    k.drop("b7")
    k.amiss("f-2")
    k.pause()
    k.releasehook(["1"])
    k.outhook(["1"])
    return k


class TestKnitoutStore:
    def test_opcodes_and_direction(self):
        k = _sample()
        assert k.get_operation(3) == KNIT
        assert k.get_direction(3) == RIGHT
        assert k.get_direction(2) == LEFT

    def test_args(self):
        k = _sample()
        assert k.get_args(3) == [RIGHT, Needle("b", 2), ["1", "3"]]
        assert k.get_args(5)[0] == pytest.approx(-1.25)

    def test_comment_and_metadata_pointers(self):
        k = _sample()
        assert k.get_comment(3) == "cast-on"
        assert k.get_metadata(3) == 12
        assert k.get_metadata(2) == 0
        assert k.get_metadata(0) == -1
        assert k.array.get(3, "cptr") == 1
        assert k.array.get(3, "meta") == 13

    def test_replace_comment(self):
        k = _sample()
        k.set_comment(3, "other")
        assert k.get_comment(3) == "other"
        assert len(k.comments) == 2

    def test_carrier_required(self):
        k = Knitout()
        with pytest.raises(KnitoutError, match="No carrier"):
            k.knit(RIGHT, "f1", [])

    def test_unknown_carrier(self):
        k = Knitout()
        with pytest.raises(KnitoutError, match="does not exist"):
            k.knit(RIGHT, "f1", ["12"])

    def test_wrong_argument_count(self):
        with pytest.raises(KnitoutError, match="takes"):
            Knitout().emit("xfer", "f1")

    def test_unknown_operation(self):
        with pytest.raises(KnitoutError, match="Unsupported"):
            Knitout().emit("loop")


class TestKnitoutText:
    def test_header_lines(self):
        lines = _sample().to_string().split("\n")
        assert lines[0] == ";!knitout-2"
        assert lines[1] == ";;Carriers: 1 2 3 4 5 6 7 8 9 10"
        assert lines[2] == ";;Machine: SWG091N2"

    def test_body_formatting(self):
        lines = _sample().to_body_lines()
        assert lines[0] == "inhook 1"
        assert lines[1] == "x-stitch-number 33"
        assert lines[2] == "tuck - f4 1 ;$meta=0"
        assert lines[3] == "knit + b2 1 3 ;cast-on $meta=12"
        assert lines[4] == ";section"
        assert lines[5] == "rack -1.25"
        assert lines[6] == "xfer f3 b3"
        assert lines[7] == "stitch 0.5 30"
        assert lines[8] == "split + f1 b1 2"
        assert lines[10] == "x-presser-mode auto"
        assert lines[12] == "amiss f-2"

    def test_round_trip_is_identical(self):
        text = _sample().to_string()
        parsed = Knitout.from_string(text)
        assert parsed.to_string() == text
        for i in range(len(parsed)):
            assert parsed.get_entry(i) == _sample().get_entry(i)
            assert parsed.get_comment(i) == _sample().get_comment(i)
            assert parsed.get_metadata(i) == _sample().get_metadata(i)

    def test_unknown_header_preserved(self):
        text = ";!knitout-2\n;;Carriers: A B\n;;X-Custom: keep me\nknit + f1 B"
        k = Knitout.from_string(text)
        assert k.get_header("X-Custom") == "keep me"
        assert k.get_args(0)[2] == ["B"]
        assert k.to_string() == text

    def test_carriers_optional_when_reading(self):
        k = Knitout.from_string(";!knitout-2\n;;Carriers: 1 2\nknit + f1")
        assert k.get_args(0)[2] == []
        assert k.to_body_lines() == ["knit + f1"]

    def test_empty_lines(self):
        text = ";!knitout-2\n;;Carriers: 1\nrack 0\n\nrack 1"
        assert len(Knitout.from_string(text)) == 2
        kept = Knitout.from_string(text, keep_empty_lines=True)
        assert len(kept) == 3
        assert kept.get_operation(1) == NOOP
        assert kept.to_string() == text

    def test_invalid_operation(self):
        with pytest.raises(KnitoutError, match="Unsupported operation"):
            Knitout.from_string(";!knitout-2\n;;Carriers: 1\nloop + f1 1")

    def test_invalid_direction(self):
        with pytest.raises(KnitoutError, match="Invalid argument"):
            Knitout.from_string(";!knitout-2\n;;Carriers: 1\nknit > f1 1")

    def test_missing_version_warns(self, caplog):
        Knitout.from_string(";;Carriers: 1\nrack 0")
        assert "without a version" in caplog.text

    def test_joint_string(self):
        a = Knitout()
        a.rack(0)
        b = Knitout()
        b.rack(1)
        lines = Knitout.to_joint_string(a, b).split("\n")
        assert lines[-4:] == ["; Part 0", "rack 0", "; Part 1", "rack 1"]
        assert lines[0] == ";!knitout-2"

    def test_joint_string_reads_back(self):
        a = Knitout()
        a.rack(0)
        b = Knitout()
        b.rack(1)
        text = Knitout.to_joint_string(a, b)
        parsed = Knitout.from_string(text)
        assert parsed.get_comment(0) == " Part 0"
        assert parsed.to_string() == text

    def test_comment_padding_kept(self):
        text = ";!knitout-2\n;;Carriers: 1\n;  indented  \nrack 0 ; note $meta=3\nrack 1 ;$meta=4"
        k = Knitout.from_string(text)
        assert k.get_comment(0) == "  indented  "
        assert k.get_comment(1) == " note"
        assert k.get_metadata(1) == 3
        assert k.get_comment(2) is None
        assert k.to_string() == text

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "out.k"
        _sample().write(path)
        assert Knitout.read(path).to_string() == _sample().to_string()

    def test_float_format(self):
        assert format_float(1.0) == "1"
        assert format_float(0.1) == "0.1"
        assert format_float(-0.25) == "-0.25"

    def test_data_snapshot(self):
        k = _sample()
        copy = Knitout.from_data(k.to_data())
        assert copy.to_string() == k.to_string()
        assert copy.get_operation(5) == RACK


class TestKnitoutStream:
    def test_commits_previous_loop_entry(self):
        seen = []
        k = KnitoutStream()
        k.listen(lambda _, entry: seen.append(entry[0]))
        k.knit(RIGHT, "f1", ["1"])
        assert seen == []
        k.rack(1)
        assert seen == [KNIT, RACK]

    def test_flush(self):
        seen = []
        k = KnitoutStream()
        k.listen(lambda _, entry: seen.append(entry))
        k.tuck(LEFT, "f2", ["1"])
        k.flush()
        assert len(seen) == 1
