"""
Forum Client

Pull-only async client for a Discourse forum plus the sync job that turns
forum posts into documents for the processor.

Discourse endpoints used:
    /site.json                  health check
    /categories.json            category list
    /latest.json?page=N         paginated topic list (optionally per category)
    /t/{topic_id}/posts.json    posts of a topic
    /search.json?q=...          topic search
"""

import asyncio
import html
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html.parser import HTMLParser
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..common.config import ForumConfig
from ..common.schemas import Document, DocumentStatus, PrivacyTier, SourceType
from .processor import DocumentProcessor

logger = logging.getLogger("archivist.ingestion.forum_client")


class ForumError(Exception):
    """Forum API request failed."""


class _TextExtractor(HTMLParser):
    """Collects visible text from a post's cooked HTML."""

    _BLOCK_TAGS = {"p", "div", "br", "li", "ul", "ol", "blockquote", "pre", "h1", "h2", "h3", "h4", "h5", "h6", "tr"}
    _SKIP_TAGS = {"script", "style"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.parts: List[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in self._SKIP_TAGS:
            self._skip_depth += 1
        elif tag in self._BLOCK_TAGS:
            self.parts.append("\n\n")

    def handle_endtag(self, tag):
        if tag in self._SKIP_TAGS and self._skip_depth:
            self._skip_depth -= 1
        elif tag in self._BLOCK_TAGS:
            self.parts.append("\n\n")

    def handle_data(self, data):
        if not self._skip_depth:
            self.parts.append(data)


def strip_html(cooked: str) -> str:
    """Plain text of a cooked post; block elements become paragraph breaks."""
    if not cooked:
        return ""
    parser = _TextExtractor()
    parser.feed(cooked)
    parser.close()
    text = html.unescape("".join(parser.parts))
    paragraphs = [" ".join(p.split()) for p in text.split("\n\n")]
    return "\n\n".join(p for p in paragraphs if p)


class RateLimiter:
    """Spaces requests evenly to stay under a requests-per-minute budget."""

    def __init__(self, requests_per_minute: int = 60):
        self._interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0.0
        self._next_at = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        if self._interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait = self._next_at - now
            if wait > 0:
                await asyncio.sleep(wait)
                now = time.monotonic()
            self._next_at = now + self._interval


class DiscourseClient:
    """Async client for the Discourse JSON API.

    Requests are rate limited client-side; HTTP 429 responses are retried up
    to `max_retries` times, waiting for Retry-After when the server sends it.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        api_username: str = "system",
        requests_per_minute: int = 60,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Discourse base_url is required")
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Api-Key"] = api_key
            headers["Api-Username"] = api_username
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._limiter = RateLimiter(requests_per_minute)
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff

    @classmethod
    def from_config(cls, config: ForumConfig, **kwargs: Any) -> "DiscourseClient":
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            api_username=config.api_username,
            requests_per_minute=config.requests_per_minute,
            **kwargs,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "DiscourseClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _retry_after(self, response: httpx.Response, attempt: int) -> float:
        header = response.headers.get("Retry-After")
        if header:
            try:
                return max(0.0, float(header))
            except ValueError:
                pass
        return self._retry_backoff * (2 ** attempt)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attempt = 0
        while True:
            await self._limiter.acquire()
            logger.debug("Discourse GET %s %s", path, params or {})
            try:
                response = await self.client.get(path, params=params)
            except httpx.HTTPError as e:
                raise ForumError(f"GET {path} failed: {e}") from e

            if response.status_code == 429 and attempt < self._max_retries:
                delay = self._retry_after(response, attempt)
                attempt += 1
                logger.warning("Discourse rate limited on %s; retry %d in %.1fs", path, attempt, delay)
                await asyncio.sleep(delay)
                continue

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ForumError(f"GET {path} returned {response.status_code}") from e
            return response.json()

    async def health_check(self) -> bool:
        try:
            await self._get("/site.json")
            return True
        except ForumError as e:
            logger.error("Discourse health check failed: %s", e)
            return False

    async def fetch_categories(self) -> List[Dict[str, Any]]:
        data = await self._get("/categories.json")
        return data.get("category_list", {}).get("categories", [])

    async def fetch_topics(self, category_id: Optional[int] = None, page: int = 0) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"page": page, "order": "created"}
        if category_id is not None:
            params["category"] = category_id
        data = await self._get("/latest.json", params)
        return data.get("topic_list", {}).get("topics", [])

    async def iter_topics(
        self,
        category_id: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield topics page by page until an empty page (or max_pages)."""
        page = 0
        while max_pages is None or page < max_pages:
            topics = await self.fetch_topics(category_id=category_id, page=page)
            if not topics:
                return
            for topic in topics:
                yield topic
            page += 1

    async def fetch_posts(self, topic_id: int) -> List[Dict[str, Any]]:
        data = await self._get(f"/t/{topic_id}/posts.json")
        return data.get("post_stream", {}).get("posts", [])

    async def search_topics(self, query: str, category_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        q = query if category_id is None else f"{query} category:{category_id}"
        data = await self._get("/search.json", {"q": q})
        return (data.get("topics") or [])[:limit]


@dataclass
class SyncReport:
    """Counts from one forum sync run"""
    topics: int = 0
    posts: int = 0
    indexed: int = 0
    rejected: int = 0
    failed: int = 0
    document_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topics": self.topics,
            "posts": self.posts,
            "indexed": self.indexed,
            "rejected": self.rejected,
            "failed": self.failed,
        }


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)


class ForumSync:
    """Pulls forum posts and feeds them to the document processor as forum-sync documents."""

    def __init__(
        self,
        client: DiscourseClient,
        processor: DocumentProcessor,
        session_id: str = "forum",
        privacy_level: PrivacyTier = PrivacyTier.MINIMAL,
    ):
        self._client = client
        self._processor = processor
        self._session_id = session_id
        self._privacy_level = PrivacyTier.parse(privacy_level)

    def post_to_document(
        self,
        post: Dict[str, Any],
        topic: Dict[str, Any],
        category_name: str = "",
    ) -> Optional[Document]:
        """Build a Document from a post; None for posts without text."""
        text = strip_html(post.get("cooked", ""))
        if not text:
            return None
        topic_id = topic.get("id", post.get("topic_id"))
        slug = topic.get("slug") or post.get("topic_slug") or "topic"
        return Document(
            id=f"forum_{post['id']}",
            source_type=SourceType.FORUM_SYNC,
            raw_text=text,
            created_at=_parse_timestamp(post.get("created_at")),
            privacy_level=self._privacy_level,
            session_id=self._session_id,
            title=topic.get("title") or topic.get("fancy_title") or "",
            author=post.get("username", ""),
            track=category_name,
            tags=[t if isinstance(t, str) else t.get("name", "") for t in topic.get("tags", [])],
            source_url=f"{self._client.base_url}/t/{slug}/{topic_id}/{post.get('post_number', 1)}",
        )

    async def sync(self, category_id: Optional[int] = None, max_pages: Optional[int] = None) -> SyncReport:
        report = SyncReport()
        categories = {c["id"]: c.get("name", "") for c in await self._client.fetch_categories()}

        async for topic in self._client.iter_topics(category_id=category_id, max_pages=max_pages):
            report.topics += 1
            category_name = categories.get(topic.get("category_id"), "")
            documents = []
            for post in await self._client.fetch_posts(topic["id"]):
                report.posts += 1
                document = self.post_to_document(post, topic, category_name)
                if document is not None:
                    documents.append(document)

            for result in await self._processor.process_many(documents):
                if result.status == DocumentStatus.INDEXED:
                    report.indexed += 1
                    report.document_ids.append(result.document_id)
                elif result.status == DocumentStatus.REJECTED:
                    report.rejected += 1
                else:
                    report.failed += 1

        logger.info(
            "Forum sync finished: %d topics, %d posts, %d indexed, %d rejected, %d failed",
            report.topics, report.posts, report.indexed, report.rejected, report.failed,
        )
        return report
