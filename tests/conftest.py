import numpy as np
import pytest

from gg_pricing.helpers import ColumnMapping


@pytest.fixture
def quiet():
    """Collects log lines instead of printing them."""
    lines = []
    return lines.append, lines


@pytest.fixture
def long_records():
    # 10 -> [1, 1], 20 -> [1, 0], 30 -> [0, 0]
    return [
        {"resp_id": "a", "price": 10, "buy": 1, "region": "N"},
        {"resp_id": "b", "price": 10, "buy": "yes", "region": "S"},
        {"resp_id": "a", "price": 20, "buy": True, "region": "N"},
        {"resp_id": "b", "price": 20, "buy": "no", "region": "S"},
        {"resp_id": "a", "price": 30, "buy": 0, "region": "N"},
        {"resp_id": "b", "price": 30, "buy": False, "region": "S"},
    ]


@pytest.fixture
def long_mapping():
    return ColumnMapping(
        id_col="resp_id",
        data_format="long",
        price_col="price",
        buy_col="buy",
        segment_cols=("region",),
    )


@pytest.fixture
def wide_records():
    return [
        {"id": 1, "Price_10": 1, "Price_20": 0, "wt": 2.0},
        {"id": 2, "Price_10": "yes", "Price_20": "y", "wt": "bad"},
    ]


@pytest.fixture
def wide_mapping():
    return ColumnMapping(
        id_col="id",
        data_format="wide",
        wide_price_cols=("Price_10", "Price_20"),
        price_pattern=r"\d+",
        weight_col="wt",
    )


def make_survey(n_resp=200, prices=(5, 10, 15, 20, 25), seed=7):
    """Synthetic long-format survey with a clearly falling acceptance curve."""
    rng = np.random.default_rng(seed)
    accept = np.linspace(0.9, 0.1, len(prices))
    rows = []
    for r in range(n_resp):
        for p, a in zip(prices, accept):
            rows.append(
                {
                    "respondent": f"r{r}",
                    "price": p,
                    "buy": int(rng.random() < a),
                    "segment": "A" if r % 2 else "B",
                }
            )
    return rows


@pytest.fixture
def survey_records():
    return make_survey()


@pytest.fixture
def survey_mapping():
    return ColumnMapping(
        id_col="respondent",
        price_col="price",
        buy_col="buy",
        segment_cols=("segment",),
    )
