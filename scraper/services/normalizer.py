"""Turn raw feed items into the canonical comments payload."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from scraper.models.domain import (
    Author,
    Comment,
    CommentsPayload,
    Question,
    RawAnswer,
    RawAuthor,
    RawFeedPage,
    RawQuestion,
)
from scraper.settings import SITE_URL, EffectiveConfig
from scraper.utils.logging import get_logger

logger = get_logger(__name__)

ANONYMOUS_AUTHOR = "知乎用户"

_SCRIPT_RE = re.compile(r"<script[\s\S]*?>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?>[\s\S]*?</style>", re.IGNORECASE)
_BREAK_RE = re.compile(r"<br\s*/?>|</p>|</div>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_ENTITY_RE = re.compile(r"&(#\d+|#[xX][0-9a-fA-F]+|\w+);")
_NEWLINE_PAD_RE = re.compile(r"[ \t\r\f\v]*\n[ \t\r\f\v]*")
_NEWLINES_RE = re.compile(r"\n{2,}")
_SPACES_RE = re.compile(r"[ \t\r\f\v]+")

REPLACEMENT_CHAR = "\ufffd"

NAMED_ENTITIES = {
    "amp": "&",
    "lt": "<",
    "gt": ">",
    "quot": '"',
    "apos": "'",
    "nbsp": " ",
}


def _decode_entity(match: "re.Match[str]") -> str:
    entity = match.group(1)
    if entity[0] == "#":
        try:
            code = int(entity[2:], 16) if entity[1] in "xX" else int(entity[1:], 10)
        except ValueError:
            return match.group(0)
        if code > 0x10FFFF:
            return match.group(0)
        # NUL and lone surrogates cannot be encoded as UTF-8.
        if code == 0 or 0xD800 <= code <= 0xDFFF:
            return REPLACEMENT_CHAR
        return chr(code)
    return NAMED_ENTITIES.get(entity, match.group(0))


def decode_entities(text: str) -> str:
    return _ENTITY_RE.sub(_decode_entity, text)


def html_to_plain_text(html: Optional[str]) -> str:
    """Strip markup from an answer body, keeping paragraph breaks as newlines."""
    if not html:
        return ""
    text = _STYLE_RE.sub("", _SCRIPT_RE.sub("", html))
    text = _BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    text = decode_entities(text).replace("\u00a0", " ")
    text = _NEWLINE_PAD_RE.sub("\n", text)
    text = _NEWLINES_RE.sub("\n", text)
    text = _SPACES_RE.sub(" ", text)
    return text.strip()


def build_author_profile_url(author: Optional[RawAuthor]) -> str:
    if author is None:
        return ""
    if author.url_token:
        return f"{SITE_URL}/people/{author.url_token}"
    return author.url or ""


def build_answer_url(question_id: str, answer_id: str) -> str:
    return f"{SITE_URL}/question/{question_id}/answer/{answer_id}"


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _resolve(item: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    target = item.get("target")
    if isinstance(target, dict) and target:
        return target, item.get("target_type")
    return item, ("answer" if item.get("url") else None)


def _parse_items(items: Iterable[Dict[str, Any]]) -> Iterator[Tuple[RawAnswer, bool]]:
    for position, item in enumerate(items):
        raw, target_type = _resolve(item)
        if target_type not in (None, "answer"):
            continue
        try:
            yield RawAnswer.model_validate(raw), raw is not item
        except ValidationError as exc:
            logger.debug("normalize.item_invalid", extra={"position": position, "errors": exc.error_count()})


def iter_answers(items: Iterable[Dict[str, Any]]) -> Iterator[RawAnswer]:
    """Yield parsed answers in feed order, skipping non-answer targets."""
    for answer, _ in _parse_items(items):
        yield answer


def dedupe_answers(answers: Iterable[RawAnswer]) -> List[RawAnswer]:
    seen: set[str] = set()
    unique: List[RawAnswer] = []
    for answer in answers:
        if not answer.id or answer.id in seen:
            continue
        seen.add(answer.id)
        unique.append(answer)
    return unique


def _count(value: Optional[int]) -> int:
    return max(0, value or 0)


def to_comment(answer: RawAnswer, config: EffectiveConfig) -> Comment:
    if not answer.id:
        raise ValueError("answer has no id")
    author = answer.author
    question_id = (answer.question.id if answer.question else None) or config.question_id
    source_html = answer.content if answer.content is not None else (answer.excerpt or "")
    return Comment(
        id=answer.id,
        author=Author(
            name=(author.name if author and author.name is not None else ANONYMOUS_AUTHOR),
            headline=(author.headline if author else None) or "",
            avatar_url=(author.avatar_url if author else None) or "",
            profile_url=build_author_profile_url(author),
        ),
        excerpt=(answer.excerpt or "").strip(),
        content_text=html_to_plain_text(source_html),
        voteup_count=_count(answer.voteup_count),
        comment_count=_count(answer.comment_count),
        thanks_count=_count(answer.thanks_count),
        created_at=_count(answer.created_time),
        answer_url=build_answer_url(question_id, answer.id),
    )


def fallback_question(config: EffectiveConfig) -> Question:
    return Question(id=config.question_id, title=config.question_title, url=config.question_url)


def pick_question(answers: Iterable[RawAnswer], config: EffectiveConfig) -> Question:
    for answer in answers:
        source: Optional[RawQuestion] = answer.question
        if source is None or not source.id:
            continue
        return Question(
            id=source.id,
            title=source.title or config.question_title,
            url=f"{SITE_URL}/question/{source.id}",
        )
    return fallback_question(config)


def normalize(page: RawFeedPage, config: EffectiveConfig, *, now: Optional[datetime] = None) -> CommentsPayload:
    """Build a CommentsPayload from an aggregated feed.

    First occurrence of an answer id wins and feed order is kept. Items
    without an id are dropped. Question metadata comes from wrapped feed
    targets before bare answers.
    """
    parsed = list(_parse_items(page.data))
    unique = dedupe_answers(answer for answer, _ in parsed)
    by_priority = [answer for answer, wrapped in parsed if wrapped]
    by_priority += [answer for answer, wrapped in parsed if not wrapped]
    comments = [to_comment(answer, config) for answer in unique]
    dropped = len(page.data) - len(comments)
    if dropped:
        logger.info("normalize.dropped", extra={"items": len(page.data), "kept": len(comments), "dropped": dropped})
    return CommentsPayload(
        question=pick_question(by_priority, config),
        comments=comments,
        fetched_at=utc_timestamp(now),
        total=len(comments),
    )
