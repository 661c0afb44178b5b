import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from oracle_server import status_codes
from oracle_server.status_codes import LATE_CODES, StatusCode, select_status_code, status_code_table


def test_status_code_table_matches_contract_values():
    assert status_code_table() == [
        {"label": "STATUS_CODE_UNKNOWN", "code": 0},
        {"label": "STATUS_CODE_ON_TIME", "code": 10},
        {"label": "STATUS_CODE_LATE_AIRLINE", "code": 20},
        {"label": "STATUS_CODE_LATE_WEATHER", "code": 30},
        {"label": "STATUS_CODE_LATE_TECHNICAL", "code": 40},
        {"label": "STATUS_CODE_LATE_OTHER", "code": 50},
    ]


def test_label_and_code_lookups_are_a_bijection():
    labels = {status.label for status in StatusCode}
    codes = {status.code for status in StatusCode}
    assert len(labels) == len(codes) == len(StatusCode) == 6

    for status in StatusCode:
        assert StatusCode.from_label(status.label) is status
        assert StatusCode.from_code(status.code) is status
        assert StatusCode.from_code(StatusCode.from_label(status.label).code).label == status.label


@pytest.mark.parametrize("label", ["ON_TIME", "STATUS_CODE_EARLY", "", None])
def test_from_label_rejects_unknown_labels(label):
    with pytest.raises(ValueError):
        StatusCode.from_label(label)


@pytest.mark.parametrize("code", [5, 60, "abc", None])
def test_from_code_rejects_unknown_codes(code):
    with pytest.raises(ValueError):
        StatusCode.from_code(code)


def test_past_flight_is_late_airline():
    assert select_status_code(999, now=1000) is StatusCode.LATE_AIRLINE
    assert select_status_code(1000 - 3600, now=1000) == 20


def test_current_or_future_flight_is_on_time():
    assert select_status_code(1000, now=1000) is StatusCode.ON_TIME
    assert select_status_code(1000 + 3600, now=1000) == 10


def test_selection_is_deterministic():
    results = {select_status_code(500, now=1000) for _ in range(50)}
    assert results == {StatusCode.LATE_AIRLINE}


def test_random_policy_only_picks_late_codes_for_past_flights(monkeypatch):
    picked = []

    def fake_choice(options):
        picked.append(tuple(options))
        return options[-1]

    monkeypatch.setattr(status_codes.crypto_random, "choice", fake_choice)

    assert select_status_code(1, now=1000, policy="random") is StatusCode.LATE_OTHER
    assert picked == [LATE_CODES]
    assert select_status_code(2000, now=1000, policy="random") is StatusCode.ON_TIME
    assert len(picked) == 1


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        select_status_code(1, now=1000, policy="coin-flip")
