from datetime import timedelta

import pytest

from pubdatahub.query.types import (
    Completion,
    OutputFormat,
    QueryError,
    QueryMetrics,
    QueryResult,
    SessionSettings,
    default_session_settings,
)


def test_default_session_settings_values():
    settings = default_session_settings()
    assert settings.auto_complete is True
    assert settings.show_timing is True
    assert settings.pagination_size == 20
    assert settings.output_format is OutputFormat.TABLE
    assert settings.history_limit == 1000
    assert settings.multi_line is False


def test_default_session_settings_returns_fresh_equal_objects():
    first = default_session_settings()
    second = default_session_settings()
    assert first == second
    first.history_limit = 5
    assert second.history_limit == 1000


@pytest.mark.parametrize(
    "member, value",
    [
        (OutputFormat.TABLE, "table"),
        (OutputFormat.JSON, "json"),
        (OutputFormat.CSV, "csv"),
        (OutputFormat.TSV, "tsv"),
        (OutputFormat.PARQUET, "parquet"),
    ],
)
def test_output_format_round_trip(member, value):
    assert OutputFormat(value) is member
    assert str(member) == value


def test_output_format_rejects_unknown():
    with pytest.raises(ValueError):
        OutputFormat("xml")


def test_query_error_message_and_context():
    error = QueryError(
        "syntax error", query="SELEC", data_source="test", context={"pos": 5}
    )
    assert str(error) == "syntax error"
    assert error.query == "SELEC"
    assert error.data_source == "test"
    assert error.context == {"pos": 5}


def test_query_error_is_raisable():
    error = QueryError("boom", query="SELECT 1")
    assert str(error) == "boom"
    assert error.query == "SELECT 1"
    with pytest.raises(QueryError, match="^boom$") as info:
        raise error
    assert info.value.query == "SELECT 1"


def test_query_result_defaults_are_independent():
    first = QueryResult()
    second = QueryResult()
    first.columns.append("id")
    assert second.columns == []
    assert first.count == 0
    assert first.duration == timedelta(0)


def test_query_metrics_start_at_zero():
    metrics = QueryMetrics()
    assert metrics.total_queries == 0
    assert metrics.concurrent_queries == 0
    assert metrics.cache_hit_rate == 0.0


def test_completion_defaults():
    completion = Completion(text="SELECT", type="keyword")
    assert completion.display_text == ""
    assert completion.description == ""
    assert completion.type == "keyword"


def test_session_settings_equality_by_value():
    assert SessionSettings(history_limit=3) != SessionSettings()
    assert SessionSettings(history_limit=3) == SessionSettings(history_limit=3)