import logging

from setwatch.core.telemetry import install_log_correlation, parse_otlp_headers


def test_parse_otlp_headers() -> None:
    assert parse_otlp_headers(None) == {}
    assert parse_otlp_headers("api-key=abc, x-team = data ,broken,=empty") == {"api-key": "abc", "x-team": "data"}


def test_log_records_carry_zero_ids_outside_a_span() -> None:
    install_log_correlation()
    record = logging.getLogRecordFactory()("setwatch", logging.INFO, __file__, 1, "message", (), None)
    assert record.trace_id == "0" * 32
    assert record.span_id == "0" * 16
