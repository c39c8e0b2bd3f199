"""网页搜索工具。

有 Brave Search API key 时使用 Brave，否则（或 Brave 返回非 2xx 时）
退回到 DuckDuckGo Instant Answer API。每次调用前先经过注入的 RateLimiter。
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

import httpx
from pydantic import BaseModel, Field, field_validator

from toolchat.domain.exceptions import RateLimitExceeded
from toolchat.infrastructure.logging.logger import logger
from toolchat.tools.definitions import Tool, ToolDef, ToolParam
from toolchat.tools.rate_limiter import RateLimiter

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"
USER_AGENT = "toolchat/0.1"
MAX_QUERY_LENGTH = 1000
MAX_COUNT = 20


@dataclass
class SearchResult:
    title: str
    url: str
    description: str


class WebSearchArgs(BaseModel):
    query: str = Field(max_length=MAX_QUERY_LENGTH)
    count: int = 5

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("search query cannot be empty")
        return v

    @field_validator("count", mode="before")
    @classmethod
    def clamp_count(cls, v: Any) -> Any:
        if v is None:
            return 5
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return max(1, min(MAX_COUNT, int(v)))
        return v


class WebSearchTool(Tool):
    definition = ToolDef(
        name="web_search",
        description="Search the web using Brave Search API (DuckDuckGo fallback)",
        params={
            "query": ToolParam(
                name="query",
                description="Search query string",
                required=True,
                schema={"type": "string"},
            ),
            "count": ToolParam(
                name="count",
                description="Number of search results to return (default: 5, max: 20)",
                required=False,
                schema={"type": "integer", "minimum": 1, "maximum": MAX_COUNT},
            ),
        },
    )
    Arguments = WebSearchArgs

    def __init__(
        self,
        limiter: RateLimiter,
        brave_api_key: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self._limiter = limiter
        self._brave_api_key = brave_api_key
        self._timeout = timeout

    def execute(self, args: WebSearchArgs, cancel: Optional[threading.Event] = None) -> str:
        if not self._limiter.allow():
            per_minute = round(60.0 / self._limiter.refill_interval)
            raise RateLimitExceeded(
                code="WEB_SEARCH_RATE_LIMIT",
                message=f"rate limit exceeded: maximum {per_minute} web searches per minute allowed",
            )
        self.check_cancelled(cancel)
        with httpx.Client(timeout=self._timeout, headers={"User-Agent": USER_AGENT}) as client:
            if self._brave_api_key:
                results = self._search_brave(client, args.query, args.count)
                if results is None:
                    results = self._search_duckduckgo(client, args.query, args.count)
            else:
                results = self._search_duckduckgo(client, args.query, args.count)
        return format_search_results(args.query, results)

    def _search_brave(self, client: httpx.Client, query: str, count: int) -> Optional[List[SearchResult]]:
        resp = client.get(
            BRAVE_SEARCH_URL,
            params={"q": query, "count": count},
            headers={"Accept": "application/json", "X-Subscription-Token": self._brave_api_key or ""},
        )
        if resp.status_code != 200:
            logger.warning(
                "Brave search failed, falling back to DuckDuckGo",
                extra={"extra": {"status": resp.status_code}},
            )
            return None
        data = resp.json()
        items = ((data.get("web") or {}).get("results")) or []
        return [
            SearchResult(
                title=item.get("title") or "",
                url=item.get("url") or "",
                description=item.get("description") or "",
            )
            for item in items[:count]
        ]

    def _search_duckduckgo(self, client: httpx.Client, query: str, count: int) -> List[SearchResult]:
        resp = client.get(
            DUCKDUCKGO_URL,
            params={"q": query, "format": "json", "no_html": 1, "skip_disambig": 1},
        )
        resp.raise_for_status()
        data: Dict[str, Any] = resp.json()
        results: List[SearchResult] = []
        if data.get("AbstractText"):
            results.append(
                SearchResult(
                    title=data.get("Heading") or "",
                    url=data.get("AbstractURL") or "",
                    description=data["AbstractText"],
                )
            )
        for topic in data.get("RelatedTopics") or []:
            if len(results) >= count:
                break
            text = topic.get("Text") if isinstance(topic, dict) else None
            if text:
                results.append(
                    SearchResult(title=_extract_title(text), url=topic.get("FirstURL") or "", description=text)
                )
        if not results:
            results.append(
                SearchResult(
                    title="Search Results",
                    url=f"https://duckduckgo.com/?q={quote_plus(query)}",
                    description=f"No instant results found for '{query}'. Try searching directly on the web.",
                )
            )
        return results


def _extract_title(text: str) -> str:
    head, sep, _ = text.partition(" - ")
    if sep:
        return head
    if len(text) > 60:
        return text[:57] + "..."
    return text


def format_search_results(query: str, results: List[SearchResult]) -> str:
    lines = [f"Web search results for: {query}", ""]
    if not results:
        lines.append("No results found. Try a different search query.")
        return "\n".join(lines) + "\n"
    for i, result in enumerate(results, start=1):
        lines.append(f"{i}. {result.title}")
        lines.append(f"   URL: {result.url}")
        lines.append(f"   {result.description}")
        lines.append("")
    return "\n".join(lines)
