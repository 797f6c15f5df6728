"""Tests for coercion, configuration, caching and export helpers."""

import math

import numpy as np
import pandas as pd
import pytest

from gg_pricing.helpers import (
    AnalysisConfig,
    Cache,
    ColumnMapping,
    DataEng,
    Defaults,
    ResultCache,
    ResultsTable,
)


# ---------------------------------------------------------------------------
# map_buy
# ---------------------------------------------------------------------------


class TestMapBuy:
    @pytest.mark.parametrize("val", ["1", "yes", "Y", " true ", "ON", "y\n"])
    def test_affirmative_strings(self, val):
        assert DataEng.map_buy(val) == 1

    @pytest.mark.parametrize("val", ["0", "no", "yess", "t", "", "2", "maybe"])
    def test_other_strings(self, val):
        assert DataEng.map_buy(val) == 0

    def test_booleans(self):
        assert DataEng.map_buy(True) == 1
        assert DataEng.map_buy(False) == 0
        assert DataEng.map_buy(np.bool_(True)) == 1

    def test_numbers(self):
        assert DataEng.map_buy(3) == 1
        assert DataEng.map_buy(0.01) == 1
        assert DataEng.map_buy(0) == 0
        assert DataEng.map_buy(-1) == 0
        assert DataEng.map_buy(float("nan")) == 0
        assert DataEng.map_buy(np.int64(1)) == 1

    @pytest.mark.parametrize("val", [None, [1], {"a": 1}, object()])
    def test_other_types(self, val):
        assert DataEng.map_buy(val) == 0

    def test_deterministic(self):
        vals = ["yes", 1, 0, None, "no", True, 2.5]
        assert [DataEng.map_buy(v) for v in vals] == [DataEng.map_buy(v) for v in vals]


# ---------------------------------------------------------------------------
# numeric coercion / weights
# ---------------------------------------------------------------------------


class TestToNumber:
    def test_plain(self):
        assert DataEng.to_number(10) == 10.0
        assert DataEng.to_number("12.5") == 12.5
        assert DataEng.to_number(" 7 ") == 7.0

    def test_unparseable(self):
        assert math.isnan(DataEng.to_number("abc"))
        assert math.isnan(DataEng.to_number(""))
        assert math.isnan(DataEng.to_number(None))
        assert math.isnan(DataEng.to_number([1]))

    def test_bool(self):
        assert DataEng.to_number(True) == 1.0

    def test_rejects_digit_grouping(self):
        assert math.isnan(DataEng.to_number("1_000"))
        assert math.isnan(DataEng.to_number("_5"))


class TestResolveWeight:
    def test_parseable(self):
        assert DataEng.resolve_weight("2.5") == 2.5

    @pytest.mark.parametrize("val", [None, "bad", 0, "0", float("nan"), float("inf")])
    def test_defaults_to_one(self, val):
        assert DataEng.resolve_weight(val) == 1.0


class TestExtractPrice:
    def test_first_match(self):
        import re

        rx = re.compile(r"\d+")
        assert DataEng.extract_price("Price_10_v2", rx) == 10.0
        assert math.isnan(DataEng.extract_price("Price", rx))


def test_guess_id_column():
    assert DataEng.guess_id_column(["price", "RespondentNo", "buy"]) == "RespondentNo"
    assert DataEng.guess_id_column(["price", "user_id"]) == "user_id"
    assert DataEng.guess_id_column(["price", "buy"]) is None


def test_segment_options():
    obs = pd.DataFrame({"region": pd.Series(["S", "N", None, "N"], dtype=object)})
    assert DataEng.segment_options(obs, "region") == ["", "N", "S"]
    assert DataEng.segment_options(obs, "missing") == []


# ---------------------------------------------------------------------------
# configuration
# ---------------------------------------------------------------------------


class TestConfig:
    @pytest.mark.parametrize("b", [0, -5])
    def test_rejects_non_positive_iterations(self, b):
        with pytest.raises(ValueError):
            AnalysisConfig(boot_iterations=b)

    def test_rejects_bad_steps_and_method(self):
        with pytest.raises(ValueError):
            AnalysisConfig(steps=0)
        with pytest.raises(ValueError):
            AnalysisConfig(range_method="median")

    def test_rejects_bad_format(self):
        with pytest.raises(ValueError):
            ColumnMapping(data_format="tall")

    def test_filters_normalized(self):
        cfg = AnalysisConfig(filters={"region": [1, "N"]})
        assert cfg.filters == (("region", ("1", "N")),)

    def test_defaults_feed_config(self):
        cfg = AnalysisConfig()
        assert cfg.steps == Defaults.STEPS == 100
        assert cfg.boot_iterations == Defaults.BOOT_ITERATIONS == 300
        assert cfg.revenue_scale == Defaults.REVENUE_SCALE == 100.0
        assert cfg.retention_pct == Defaults.RETENTION_PCT == 95.0
        assert ColumnMapping().price_pattern == Defaults.PRICE_PATTERN

    def test_config_is_hashable(self):
        a = AnalysisConfig(filters={"r": ["N"], "g": ["x"]})
        b = AnalysisConfig(filters={"g": ["x"], "r": ["N"]})
        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b, AnalysisConfig()}) == 2

    def test_signature_ignores_filter_order(self):
        a = AnalysisConfig(filters={"r": ["N", "S"], "g": ["x"]})
        b = AnalysisConfig(filters={"g": ["x"], "r": ["S", "N"]})
        assert a.signature() == b.signature()
        assert a.signature() != AnalysisConfig().signature()

    def test_mapping_is_configured(self):
        assert not ColumnMapping().is_configured()
        assert not ColumnMapping(id_col="id", price_col="p").is_configured()
        assert ColumnMapping(id_col="id", price_col="p", buy_col="b").is_configured()
        assert ColumnMapping(
            id_col="id", data_format="wide", wide_price_cols=["P10"]
        ).is_configured()
        assert not ColumnMapping(id_col="id", data_format="wide").is_configured()


# ---------------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------------


class TestCache:
    def test_signature_stable_and_sensitive(self):
        obs = pd.DataFrame(
            {
                "respondent_id": pd.Series(["a", 1, None], dtype=object),
                "price": [1.0, 2.0, 3.0],
                "buy": [1, 0, 1],
                "w": [1.0, 1.0, 1.0],
            }
        )
        cfg = AnalysisConfig()
        assert Cache.signature(obs, cfg) == Cache.signature(obs.copy(), cfg)
        assert Cache.signature(obs, cfg) != Cache.signature(
            obs, AnalysisConfig(revenue_scale=1)
        )
        changed = obs.assign(buy=[1, 1, 1])
        assert Cache.signature(obs, cfg) != Cache.signature(changed, cfg)

    def test_ids_equal_as_text_stay_apart(self):
        def frame(ids):
            return pd.DataFrame(
                {
                    "respondent_id": pd.Series(ids, dtype=object),
                    "price": [10.0, 10.0],
                    "buy": [1, 0],
                    "w": [1.0, 1.0],
                }
            )

        two, one = frame([1, "1"]), frame(["1", "1"])
        cfg = AnalysisConfig()
        assert DataEng.respondent_codes(two)[1] == 2
        assert DataEng.respondent_codes(one)[1] == 1
        assert Cache.signature(two, cfg) != Cache.signature(one, cfg)

    def test_lru_eviction(self):
        c = ResultCache(max_entries=2)
        c.put("a", 1)
        c.put("b", 2)
        assert c.get("a") == 1  # a is now most recent
        c.put("c", 3)
        assert "b" not in c
        assert "a" in c and "c" in c
        assert len(c) == 2
        assert c.get("missing") is None


# ---------------------------------------------------------------------------
# export table
# ---------------------------------------------------------------------------


class TestResultsTable:
    def test_build_renames_columns(self):
        agg = pd.DataFrame(
            {
                "price": [10.0],
                "n_rows": [2],
                "demand": [0.5],
                "revenue": [5.0],
                "demand_lo": [np.nan],
                "demand_hi": [np.nan],
                "revenue_lo": [np.nan],
                "revenue_hi": [np.nan],
                "revenue_scaled": [1.0],
            }
        )
        table = ResultsTable.build(agg)
        assert list(table.columns) == [
            "Price",
            "N",
            "Demand",
            "Revenue",
            "Demand_Lo",
            "Demand_Hi",
            "Revenue_Lo",
            "Revenue_Hi",
        ]
        assert table.loc[0, "Revenue"] == 5.0

        cols = {c["id"]: c for c in ResultsTable.columns(table)}
        assert cols["N"]["format"] == {"specifier": ",d"}
        assert cols["Demand"]["format"] == {"specifier": ".1%"}

    def test_build_empty(self):
        assert ResultsTable.build(pd.DataFrame()).empty
        assert ResultsTable.columns(pd.DataFrame()) == []

    def test_parameter_text(self):
        assert ResultsTable.segmentation_text({}) == "None"
        assert (
            ResultsTable.segmentation_text({"region": ("N", "S"), "age": ()})
            == "region: N, S"
        )
        assert ResultsTable.range_text(AnalysisConfig()) == (
            "Analysis focused on peak OPP only."
        )
        assert ResultsTable.range_text(
            AnalysisConfig(show_range=True, retention_pct=90)
        ) == ("Revenue Retention: > 90% of Max")
        assert ResultsTable.range_text(
            AnalysisConfig(show_range=True, range_method="statistical")
        ) == ("Statistical Confidence Lower Bound")
