"""Search query translation and local evaluation."""

from datetime import date

from mailcache.core.search import SearchQuery
from mailcache.imap.search import build_search


def test_empty_query_matches_all():
    assert SearchQuery().is_empty
    assert build_search(SearchQuery()) == ["ALL"]


def test_fields_become_separate_criteria():
    query = SearchQuery(subject="invoice", sender="bob", body="total", unseen=True, flagged=True)
    assert build_search(query) == [
        "SUBJECT",
        "invoice",
        "FROM",
        "bob",
        "BODY",
        "total",
        "UNSEEN",
        "FLAGGED",
    ]


def test_year_narrows_explicit_window():
    query = SearchQuery(year=2023, since=date(2023, 6, 1))
    assert query.date_window() == (date(2023, 6, 1), date(2024, 1, 1))
    assert build_search(query) == ["SENTSINCE", date(2023, 6, 1), "SENTBEFORE", date(2024, 1, 1)]


def test_message_id_uses_header_search():
    assert build_search(SearchQuery(message_id="<a@b>")) == ["HEADER", "Message-ID", "<a@b>"]
