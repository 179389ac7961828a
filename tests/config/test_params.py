"""Tests for option loading, merging and validation."""

import pytest

from knitsketch.config.params import ConfigError, Params, get_defaults, merge_options


class TestDefaults:
    def test_defaults_are_read_only(self):
        defaults = get_defaults()
        with pytest.raises(TypeError):
            defaults["meshLevels"] = 5

    def test_mesh_profile(self):
        defaults = get_defaults()
        assert defaults["meshLevels"] == 3
        assert defaults["levelFactor"] == 2
        assert defaults["minResolution"] == 8

    def test_carriers_have_default(self):
        assert get_defaults()["carriers"]["default"] == "1"


class TestMergeOptions:
    def test_nested_merge_keeps_siblings(self):
        merged = merge_options(get_defaults(), {"sizing": {"default": {"wale": "4 / mm"}}})
        assert merged["sizing"]["default"]["wale"] == "4 / mm"
        assert merged["sizing"]["default"]["course"] == "300 mm / 100 stitches"

    def test_dotted_keys(self):
        merged = merge_options(get_defaults(), {"sizing.sketch.scale": "2 mm / px"})
        assert merged["sizing"]["sketch"]["scale"] == "2 mm / px"

    def test_does_not_mutate_base(self):
        base = {"a": {"b": 1}}
        merge_options(base, {"a.b": 2})
        assert base == {"a": {"b": 1}}


class TestParams:
    def test_default_sizing(self):
        params = Params.from_mapping()
        assert params.wale_dist == pytest.approx(1.35)
        assert params.course_dist == pytest.approx(3.0)
        assert params.scale == pytest.approx(1.0)

    def test_density_from_number(self):
        params = Params.from_mapping({"sizing.default.wale": 5, "sizing.default.course": 5})
        assert params.wale_dist == pytest.approx(0.2)
        assert params.course_dist == pytest.approx(0.2)

    def test_density_from_unit_string(self):
        params = Params.from_mapping({"sizing.default.wale": "5 stitches / mm"})
        assert params.wale_dist == pytest.approx(0.2)

    def test_density_in_inches(self):
        params = Params.from_mapping({"sizing.default.course": "254 stitches / 10 in"})
        assert params.course_dist == pytest.approx(1.0)

    def test_half_gauge_step(self):
        assert Params.from_mapping({"gauge": "half"}).needle_step == 2
        assert Params.from_mapping({"gauge": "full"}).needle_step == 1

    def test_invalid_density(self):
        with pytest.raises(ConfigError, match="stitches per mm"):
            Params.from_mapping({"sizing.default.wale": "3 px / px"})

    def test_invalid_choice(self):
        with pytest.raises(ConfigError, match="seamStop"):
            Params.from_mapping({"seamStop": "sometimes"})

    def test_invalid_integer(self):
        with pytest.raises(ConfigError, match="meshLevels"):
            Params.from_mapping({"meshLevels": 0})

    def test_region_bounds_order(self):
        with pytest.raises(ConfigError, match="maxRegionDT"):
            Params.from_mapping({"minRegionDT": 5, "maxRegionDT": 1})

    def test_options_keep_overrides(self):
        params = Params.from_mapping({"verbose": True})
        assert params.verbose is True
        assert params.options["verbose"] is True
