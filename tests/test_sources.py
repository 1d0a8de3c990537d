"""Tests for named source fetching (HTTP mocked)."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from docmerge_core.errors import SourceFetchError
from docmerge_core.sources import extract_records, fetch_named_source, fetch_named_sources


def make_session(payload=None, error=None, json_error=None):
    session = MagicMock()
    response = MagicMock()
    if error is not None:
        session.get.side_effect = error
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = payload
    session.get.return_value = response
    return session


class TestFetchNamedSource:
    def test_list_payload(self):
        session = make_session([{"Email": "a@example.com"}])
        records = fetch_named_source("https://example.com/c", session=session)
        assert records == [{"Email": "a@example.com"}]
        session.get.assert_called_once_with(
            "https://example.com/c", headers={"Accept": "application/json"}, timeout=30
        )

    def test_wrapped_payload(self):
        session = make_session({"records": [{"Id": 1}], "total": 1})
        assert fetch_named_source("https://example.com/c", session=session) == [{"Id": 1}]

    def test_non_list_payload(self):
        session = make_session({"status": "ok"})
        with pytest.raises(SourceFetchError, match="expected a list of records, got dict"):
            fetch_named_source("https://example.com/c", session=session, alias="Contacts")

    def test_timeout(self):
        session = make_session(error=requests.exceptions.Timeout())
        with pytest.raises(SourceFetchError, match="timed out after 5s") as excinfo:
            fetch_named_source("https://example.com/c", timeout=5, session=session, alias="Contacts")
        assert excinfo.value.alias == "Contacts"

    def test_http_error(self):
        session = make_session()
        session.get.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("404")
        with pytest.raises(SourceFetchError, match="request failed"):
            fetch_named_source("https://example.com/c", session=session)

    def test_invalid_json(self):
        session = make_session(json_error=ValueError("Expecting value"))
        with pytest.raises(SourceFetchError, match="not valid JSON"):
            fetch_named_source("https://example.com/c", session=session)

    def test_module_level_requests_used_without_session(self):
        with patch("docmerge_core.sources.requests.get") as get:
            get.return_value.json.return_value = []
            assert fetch_named_source("https://example.com/c") == []
        get.assert_called_once()


class TestHelpers:
    def test_extract_records(self):
        assert extract_records([1]) == [1]
        assert extract_records({"data": [2]}) == [2]
        assert extract_records({"items": [3]}) == [3]
        assert extract_records({"items": "x"}) is None
        assert extract_records("text") is None

    def test_fetch_named_sources(self):
        session = make_session([{"x": 1}])
        loaded = fetch_named_sources({"A": "https://a", "B": "https://b"}, session=session)
        assert loaded == {"A": [{"x": 1}], "B": [{"x": 1}]}
        assert session.get.call_count == 2
