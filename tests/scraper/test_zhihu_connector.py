from __future__ import annotations

import logging
from typing import List

import httpx
import pytest

pytest.importorskip("pytest_httpx")

from scraper.connectors.base import ConnectorError, PermanentError, TransientError
from scraper.connectors.zhihu import ZhihuFeedConnector


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


CURSOR_2 = "https://www.zhihu.com/api/v4/questions/800718032/feeds?cursor=abc&offset=2"
CURSOR_3 = "https://www.zhihu.com/api/v4/questions/800718032/feeds?cursor=def&offset=4"


def _connector(config, **updates):
    sleep = SleepRecorder()
    return ZhihuFeedConnector(config.model_copy(update=updates), sleep=sleep), sleep


@pytest.mark.asyncio
async def test_first_page_end_makes_one_request_without_delay(httpx_mock, config, make_answer, make_feed_item, feed_page):
    httpx_mock.add_response(
        json=feed_page([make_feed_item(make_answer("1")), make_feed_item(make_answer("2"))], is_end=True, next=CURSOR_2)
    )
    connector, sleep = _connector(config)

    page = await connector.fetch_all()

    assert len(httpx_mock.get_requests()) == 1
    assert sleep.calls == []
    assert [item["target"]["id"] for item in page.data] == ["1", "2"]


@pytest.mark.asyncio
async def test_first_request_query_parameters(httpx_mock, config, feed_page):
    httpx_mock.add_response(json=feed_page([], is_end=True))
    connector, _ = _connector(config, page_size=7)

    await connector.fetch_all()

    request = httpx_mock.get_requests()[0]
    assert request.url.path == "/api/v4/questions/800718032/feeds"
    params = request.url.params
    assert params["limit"] == "7"
    assert params["offset"] == "0"
    assert params["platform"] == "desktop"
    assert params["include"] == config.include_fields
    assert "sort_by" not in params


@pytest.mark.asyncio
async def test_answers_endpoint_sends_sort_by(httpx_mock, config, make_answer, feed_page):
    httpx_mock.add_response(json=feed_page([make_answer("1")], is_end=True))
    connector, _ = _connector(config, endpoint="answers", sort_by="created")

    page = await connector.fetch_all()

    request = httpx_mock.get_requests()[0]
    assert request.url.path == "/api/v4/questions/800718032/answers"
    assert request.url.params["sort_by"] == "created"
    assert page.data[0]["id"] == "1"


@pytest.mark.asyncio
async def test_follows_cursor_verbatim_and_concatenates(httpx_mock, config, make_answer, make_feed_item, feed_page):
    httpx_mock.add_response(json=feed_page([make_feed_item(make_answer("1"))], is_end=False, next=CURSOR_2, totals=3))
    httpx_mock.add_response(url=CURSOR_2, json=feed_page([make_feed_item(make_answer("2"))], is_end=False, next=CURSOR_3))
    httpx_mock.add_response(url=CURSOR_3, json=feed_page([make_feed_item(make_answer("1"))], is_end=True))
    connector, sleep = _connector(config)

    page = await connector.fetch_all()

    requests = httpx_mock.get_requests()
    assert [str(r.url) for r in requests[1:]] == [CURSOR_2, CURSOR_3]
    # duplicates across pages are kept here; the normalizer drops them
    assert [item["target"]["id"] for item in page.data] == ["1", "2", "1"]
    assert sleep.calls == [0.25, 0.25]


@pytest.mark.asyncio
async def test_stops_at_max_pages_with_partial_data(httpx_mock, config, make_answer, make_feed_item, feed_page):
    httpx_mock.add_response(json=feed_page([make_feed_item(make_answer("1"))], is_end=False, next=CURSOR_2))
    httpx_mock.add_response(url=CURSOR_2, json=feed_page([make_feed_item(make_answer("2"))], is_end=False, next=CURSOR_3))
    connector, sleep = _connector(config, max_pages=2)

    page = await connector.fetch_all()

    assert len(httpx_mock.get_requests()) == 2
    assert len(page.data) == 2
    assert sleep.calls == [0.25]


@pytest.mark.asyncio
async def test_login_required_is_a_soft_stop(httpx_mock, config, make_answer, make_feed_item, feed_page, caplog):
    httpx_mock.add_response(
        json=feed_page([make_feed_item(make_answer("1"))], is_end=False, next=CURSOR_2, need_force_login=True)
    )
    connector, sleep = _connector(config)

    with caplog.at_level(logging.WARNING):
        page = await connector.fetch_all()

    assert len(httpx_mock.get_requests()) == 1
    assert len(page.data) == 1
    assert sleep.calls == []
    assert any(r.getMessage() == "feed.login_required" for r in caplog.records)


@pytest.mark.asyncio
async def test_missing_paging_ends_the_feed(httpx_mock, config, make_answer):
    httpx_mock.add_response(json={"data": [make_answer("1")]})
    connector, _ = _connector(config)

    page = await connector.fetch_all()

    assert len(page.data) == 1
    assert page.paging is None


@pytest.mark.asyncio
async def test_error_envelope_fails_with_upstream_message(httpx_mock, config):
    httpx_mock.add_response(status_code=200, json={"error": {"message": "请求参数异常", "code": 10003}})
    connector, _ = _connector(config)

    with pytest.raises(PermanentError) as exc:
        await connector.fetch_all()

    assert "请求参数异常" in str(exc.value)


@pytest.mark.asyncio
async def test_error_envelope_on_second_page_discards_everything(httpx_mock, config, make_answer, make_feed_item, feed_page):
    httpx_mock.add_response(json=feed_page([make_feed_item(make_answer("1"))], is_end=False, next=CURSOR_2))
    httpx_mock.add_response(url=CURSOR_2, status_code=403, json={"error": {"message": "need login"}})
    connector, _ = _connector(config)

    with pytest.raises(ConnectorError) as exc:
        await connector.fetch_all()

    assert "need login" in exc.value.message
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_server_error_is_transient(httpx_mock, config):
    httpx_mock.add_response(status_code=503, text="busy")
    connector, _ = _connector(config)

    with pytest.raises(TransientError) as exc:
        await connector.fetch_all()

    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_client_error_is_permanent(httpx_mock, config):
    httpx_mock.add_response(status_code=404, text="missing")
    connector, _ = _connector(config)

    with pytest.raises(PermanentError):
        await connector.fetch_all()


@pytest.mark.asyncio
async def test_transport_error_is_transient(httpx_mock, config):
    httpx_mock.add_exception(httpx.ConnectError("connection refused"))
    connector, _ = _connector(config)

    with pytest.raises(TransientError):
        await connector.fetch_all()


@pytest.mark.asyncio
async def test_same_headers_on_every_page(httpx_mock, config, make_answer, make_feed_item, feed_page):
    httpx_mock.add_response(json=feed_page([make_feed_item(make_answer("1"))], is_end=False, next=CURSOR_2))
    httpx_mock.add_response(url=CURSOR_2, json=feed_page([], is_end=True))
    connector, _ = _connector(config, extra_headers={"cookie": "z_c0=secret"})

    await connector.fetch_all()

    for request in httpx_mock.get_requests():
        assert request.headers["cookie"] == "z_c0=secret"
        assert request.headers["referer"] == "https://www.zhihu.com/question/800718032"
        assert request.headers["user-agent"].startswith("Mozilla/5.0")
        assert request.headers["accept"] == "application/json, text/plain, */*"


@pytest.mark.asyncio
async def test_short_first_page_only_warns(httpx_mock, config, make_answer, make_feed_item, feed_page, caplog):
    httpx_mock.add_response(json=feed_page([make_feed_item(make_answer("1"))], is_end=True))
    connector, _ = _connector(config, page_size=10)

    with caplog.at_level(logging.WARNING):
        page = await connector.fetch_all()

    assert len(page.data) == 1
    assert any(r.getMessage() == "feed.short_first_page" for r in caplog.records)
