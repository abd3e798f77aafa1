import io
import json
from decimal import Decimal
from urllib.error import URLError

import pytest

import bls_client
from bls_client import BlsPoint, IngestionFailure, build_payload, parse_response
from config import BLS_API_V1_URL, BLS_API_V2_URL, Settings


def make_settings(api_key: str = "", timeout=None) -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        timezone="America/New_York",
        history_months=24,
        recompute_workers=1,
        ingest_schedule_enabled=False,
        bls_api_key=api_key,
        bls_api_url=BLS_API_V2_URL if api_key else BLS_API_V1_URL,
        bls_overall_series_id="CUUR0000SA0",
        bls_timeout_secs=timeout,
        bls_lookback="sequence",
        bls_unmapped_series="overall",
    )


class FakeResponse:
    def __init__(self, payload) -> None:
        self._body = io.BytesIO(json.dumps(payload).encode("utf-8"))

    def read(self) -> bytes:
        return self._body.read()

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


SUCCESS = {
    "status": "REQUEST_SUCCEEDED",
    "message": [],
    "Results": {
        "series": [
            {
                "seriesID": "CUUR0000SA0",
                "data": [
                    {"year": "2025", "period": "M02", "value": "319.082"},
                    {"year": "2025", "period": "M13", "value": "318.000"},
                    {"year": "2025", "period": "M01", "value": "317.671"},
                    {"year": "2024", "period": "M12", "value": "-"},
                    {"year": "2024", "period": "M11", "value": ""},
                    {"year": "2024", "period": "M10", "value": "n/a"},
                    {"year": "2024", "period": "S01", "value": "310.000"},
                ],
            },
            {"seriesID": "CUUR0000SAF11", "data": []},
        ]
    },
}


def test_payload_without_key_omits_registration() -> None:
    payload = build_payload(["CUUR0000SA0", "CUUR0000SAH"], 2024, 2026)

    assert payload == {
        "seriesid": ["CUUR0000SA0", "CUUR0000SAH"],
        "startyear": "2024",
        "endyear": "2026",
    }


def test_payload_with_key_includes_registration() -> None:
    payload = build_payload(["CUUR0000SA0"], 2025, 2026, registration_key="abc123")
    assert payload["registrationkey"] == "abc123"


def test_parse_keeps_monthly_numeric_points_in_order() -> None:
    series = parse_response(SUCCESS)

    assert [s.series_id for s in series] == ["CUUR0000SA0", "CUUR0000SAF11"]
    overall = series[0]
    assert overall.points == [
        BlsPoint(2025, 1, Decimal("317.671")),
        BlsPoint(2025, 2, Decimal("319.082")),
    ]
    assert overall.skipped == 5
    assert series[1].points == []


def test_parse_rejects_failed_status() -> None:
    body = {"status": "REQUEST_NOT_PROCESSED", "message": ["daily threshold reached"]}
    with pytest.raises(IngestionFailure, match="daily threshold"):
        parse_response(body)


@pytest.mark.parametrize(
    "body",
    [
        [],
        {"status": "REQUEST_SUCCEEDED"},
        {"status": "REQUEST_SUCCEEDED", "Results": {"series": "nope"}},
        {"status": "REQUEST_SUCCEEDED", "Results": {"series": [{"data": []}]}},
    ],
)
def test_parse_rejects_malformed_bodies(body) -> None:
    with pytest.raises(IngestionFailure):
        parse_response(body)


def test_fetch_posts_json_and_parses(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, **kwargs):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["kwargs"] = kwargs
        return FakeResponse(SUCCESS)

    monkeypatch.setattr(bls_client, "get_settings", lambda: make_settings("key-1"))
    monkeypatch.setattr(bls_client, "urlopen", fake_urlopen)

    series = bls_client.fetch_series(["CUUR0000SA0"], 2024, 2026)

    assert captured["url"] == BLS_API_V2_URL
    assert captured["method"] == "POST"
    assert captured["body"]["registrationkey"] == "key-1"
    assert captured["kwargs"] == {}
    assert len(series[0].points) == 2


def test_fetch_passes_configured_timeout(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, **kwargs):
        captured.update(kwargs)
        return FakeResponse(SUCCESS)

    monkeypatch.setattr(bls_client, "get_settings", lambda: make_settings(timeout=15.0))
    monkeypatch.setattr(bls_client, "urlopen", fake_urlopen)

    bls_client.fetch_series(["CUUR0000SA0"], 2024, 2026)

    assert captured == {"timeout": 15.0}


def test_fetch_wraps_network_errors(monkeypatch) -> None:
    def fake_urlopen(req, **kwargs):
        raise URLError("connection refused")

    monkeypatch.setattr(bls_client, "get_settings", lambda: make_settings())
    monkeypatch.setattr(bls_client, "urlopen", fake_urlopen)

    with pytest.raises(IngestionFailure):
        bls_client.fetch_series(["CUUR0000SA0"], 2024, 2026)


def test_fetch_wraps_undecodable_body(monkeypatch) -> None:
    class BinaryResponse(FakeResponse):
        def read(self) -> bytes:
            return b"\xff\xfe{"

    monkeypatch.setattr(bls_client, "get_settings", lambda: make_settings())
    monkeypatch.setattr(bls_client, "urlopen", lambda req, **kwargs: BinaryResponse({}))

    with pytest.raises(IngestionFailure):
        bls_client.fetch_series(["CUUR0000SA0"], 2024, 2026)


@pytest.mark.parametrize(
    "data",
    [
        ["oops"],
        [{"year": "2025", "period": "M01", "value": "1"}, 7],
        "oops",
    ],
)
def test_parse_rejects_malformed_data_points(data) -> None:
    body = {
        "status": "REQUEST_SUCCEEDED",
        "Results": {"series": [{"seriesID": "CUUR0000SA0", "data": data}]},
    }
    with pytest.raises(IngestionFailure):
        parse_response(body)


def test_parse_skips_values_outside_stored_precision() -> None:
    body = {
        "status": "REQUEST_SUCCEEDED",
        "Results": {
            "series": [
                {
                    "seriesID": "CUUR0000SA0",
                    "data": [
                        {"year": "2025", "period": "M01", "value": "1e30"},
                        {"year": "2025", "period": "M02", "value": "12345678.9"},
                        {"year": "2025", "period": "M03", "value": "Infinity"},
                        {"year": "0", "period": "M04", "value": "300.000"},
                        {"year": "2025", "period": "M05", "value": "321.12345"},
                    ],
                }
            ]
        },
    }

    [series] = parse_response(body)

    assert series.points == [BlsPoint(2025, 5, Decimal("321.123"))]
    assert series.skipped == 4
