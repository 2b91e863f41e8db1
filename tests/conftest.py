from unittest.mock import patch

import pytest

from catalog_sync.fanout import FanOut
from catalog_sync.fetcher import ResilientFetcher, RetryConfig
from catalog_sync.ledger import SessionLedger
from catalog_sync.sinks import InMemoryDocumentSink, SystemOfRecord


@pytest.fixture()
def no_sleep():
    # fetcher and workers share the time module, so one patch covers both.
    with patch('catalog_sync.fetcher.time.sleep') as mock_sleep:
        yield mock_sleep


@pytest.fixture()
def fetcher():
    return ResilientFetcher(retry_config=RetryConfig(max_retries=3, base_delay=1.0, max_delay=30.0))


@pytest.fixture()
def search_sink():
    return InMemoryDocumentSink(name='search_index')


@pytest.fixture()
def rag_sink():
    return InMemoryDocumentSink(name='rag_store')


@pytest.fixture()
def fanout(search_sink, rag_sink):
    return FanOut(SystemOfRecord(), search_sink, rag_sink)


@pytest.fixture()
def ledger():
    return SessionLedger()
