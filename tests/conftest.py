from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scraper.settings import EffectiveConfig, reset_settings_cache  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # Keep the developer's data/ files and ZHIHU_* variables out of tests.
    for key in list(os.environ):
        if key.startswith("ZHIHU_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ZHIHU_CONFIG_FILE", str(tmp_path / "zhihu-config.json"))
    monkeypatch.setenv("ZHIHU_HEADERS_FILE", str(tmp_path / "zhihu-headers.json"))
    monkeypatch.setenv("ZHIHU_CACHE_FILE", str(tmp_path / "zhihu-comments.json"))
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def config() -> EffectiveConfig:
    return EffectiveConfig(
        question_id="800718032",
        question_title="Fallback title",
        page_size=2,
        max_pages=None,
        page_delay_ms=250,
        refresh_interval_ms=60_000,
    )


def _make_answer(
    answer_id: Optional[Any],
    *,
    question_id: Optional[str] = "800718032",
    title: str = "What are you reading?",
    content: Optional[str] = "<p>Body</p>",
    excerpt: Optional[str] = " Body ",
    author: Optional[Dict[str, Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    answer: Dict[str, Any] = {
        "type": "answer",
        "url": f"https://api.zhihu.com/answers/{answer_id}",
        "excerpt": excerpt,
        "content": content,
        "voteup_count": 3,
        "comment_count": 1,
        "thanks_count": 0,
        "created_time": 1_700_000_000,
        "author": author if author is not None else {"name": "reader", "url_token": "reader-token"},
        **extra,
    }
    if answer_id is not None:
        answer["id"] = answer_id
    if question_id is not None:
        answer["question"] = {"id": question_id, "title": title}
    return answer


def _make_feed_item(answer: Dict[str, Any], target_type: str = "answer") -> Dict[str, Any]:
    return {"target_type": target_type, "target": answer}


def _feed_page(items: List[Dict[str, Any]], **paging: Any) -> Dict[str, Any]:
    return {"data": items, "paging": paging}


@pytest.fixture
def make_answer():
    return _make_answer


@pytest.fixture
def make_feed_item():
    return _make_feed_item


@pytest.fixture
def feed_page():
    return _feed_page
