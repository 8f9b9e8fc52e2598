"""Web search tool with SearXNG primary and DuckDuckGo fallback."""

from typing import Any

import httpx
from pydantic import BaseModel, Field

from sage.config import get_settings
from sage.errors import ToolExecutionError
from sage.tools.registry import ToolContext


class WebSearchArgs(BaseModel):
    query: str = Field(min_length=1, description="Search query")
    max_results: int = Field(default=5, ge=1, le=20)
    categories: str = Field(default="general")


def _result_item(title: str, url: str, content: str) -> dict[str, str]:
    return {"title": title.strip(), "url": url.strip(), "content": content.strip()}


def _error_hint_from_status(status_code: int) -> str:
    if status_code in {401, 403}:
        return (
            " SearXNG rejected the request. "
            "Set SEARXNG_API_KEY/SEARXNG_API_KEY_HEADER if your instance requires auth."
        )
    return ""


def _headers() -> dict[str, str]:
    settings = get_settings()
    return {
        "Accept": "application/json",
        "User-Agent": settings.web_search_user_agent.strip() or "Sage/1.0",
    }


async def _http_get_json(
    url: str,
    *,
    params: dict[str, str | int],
    headers: dict[str, str],
    timeout_s: float,
) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        response = await client.get(url, params=params, headers=headers)
        response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("response is not a JSON object")
    return payload


async def _search_searxng(
    query: str,
    limit: int,
    categories: str,
) -> tuple[list[dict[str, str]], str | None]:
    settings = get_settings()
    base_url = settings.searxng_base_url.rstrip("/")
    headers = _headers()
    header_name = settings.searxng_api_key_header.strip()
    api_key = settings.searxng_api_key.strip()
    if api_key and header_name:
        headers[header_name] = api_key
    params: dict[str, str | int] = {"q": query, "format": "json", "categories": categories}
    try:
        body = await _http_get_json(
            f"{base_url}/search",
            params=params,
            headers=headers,
            timeout_s=settings.web_search_timeout_seconds,
        )
    except httpx.HTTPStatusError as exc:
        status_code = exc.response.status_code
        err = f"search request failed ({status_code}): {exc}{_error_hint_from_status(status_code)}"
        return [], err
    except httpx.HTTPError as exc:
        return [], f"search request failed: {exc}"
    except ValueError as exc:
        return [], f"invalid search response: {exc}"

    raw_results = body.get("results", [])
    if not isinstance(raw_results, list):
        return [], "unexpected response format from SearXNG"

    results: list[dict[str, str]] = []
    for item in raw_results[:limit]:
        if not isinstance(item, dict):
            continue
        results.append(
            _result_item(
                str(item.get("title", "")),
                str(item.get("url", "")),
                str(item.get("content", "")),
            )
        )
    return results, None


def _topic_items(topics: list[Any], query: str, limit: int) -> list[dict[str, str]]:
    items: list[dict[str, str]] = []
    for topic in topics:
        if len(items) >= limit:
            break
        if not isinstance(topic, dict):
            continue
        nested = topic.get("Topics")
        if isinstance(nested, list):
            items.extend(_topic_items(nested, query, limit - len(items)))
            continue
        text = str(topic.get("Text", "")).strip()
        url = str(topic.get("FirstURL", "")).strip()
        if text or url:
            title = text.split(" - ", 1)[0] if text else query
            items.append(_result_item(title, url, text))
    return items


async def _search_duckduckgo(query: str, limit: int) -> tuple[list[dict[str, str]], str | None]:
    params: dict[str, str | int] = {
        "q": query,
        "format": "json",
        "no_redirect": 1,
        "no_html": 1,
        "skip_disambig": 1,
    }
    try:
        body = await _http_get_json(
            "https://api.duckduckgo.com/",
            params=params,
            headers=_headers(),
            timeout_s=get_settings().web_search_timeout_seconds,
        )
    except httpx.HTTPStatusError as exc:
        return [], f"fallback search failed ({exc.response.status_code}): {exc}"
    except httpx.HTTPError as exc:
        return [], f"fallback search failed: {exc}"
    except ValueError as exc:
        return [], f"invalid fallback search response: {exc}"

    results: list[dict[str, str]] = []
    abstract_text = str(body.get("AbstractText", "")).strip()
    abstract_url = str(body.get("AbstractURL", "")).strip()
    heading = str(body.get("Heading", "")).strip() or query
    if abstract_text or abstract_url:
        results.append(_result_item(heading, abstract_url, abstract_text))

    related = body.get("RelatedTopics", [])
    if isinstance(related, list):
        results.extend(_topic_items(related, query, limit - len(results)))
    return results[:limit], None


async def web_search(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    """Query SearXNG and fall back to DuckDuckGo; raises when both backends fail."""
    del context
    query = str(args["query"]).strip()
    limit = int(args.get("max_results", 5))
    categories = str(args.get("categories") or "general").strip() or "general"

    searx_results, searx_error = await _search_searxng(query, limit, categories)
    if searx_results:
        return {"query": query, "source": "searxng", "results": searx_results}

    fallback_results, fallback_error = await _search_duckduckgo(query, limit)
    if fallback_results:
        payload: dict[str, Any] = {
            "query": query,
            "source": "duckduckgo",
            "results": fallback_results,
        }
        if searx_error:
            payload["warning"] = searx_error
        return payload

    if searx_error and fallback_error:
        raise ToolExecutionError(f"{searx_error}; fallback failed: {fallback_error}")
    if searx_error or fallback_error:
        raise ToolExecutionError(searx_error or fallback_error or "search failed")
    return {"query": query, "source": "none", "results": []}
