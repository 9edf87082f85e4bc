"""Notion command-line client built on the data source API (2025-09-03).

Maps human-friendly commands onto Notion pages, data sources and blocks:
- Schema-driven filters and property values from loose `key<op>value` strings
- Cursor pagination with an optional result cap and truncation reporting
- Transparent retry with exponential backoff on every rate-limited call
- Markdown ⇄ block conversion for page bodies

Token: passed via --token-file <path>, or the NOTION_API_KEY environment variable.
"""

import argparse
import asyncio
import functools
import inspect
import json
import logging
import math
import os
import random
import re
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

import httpx
import parsy as P
import yaml

logger = logging.getLogger("notion-cli")

T = TypeVar("T")

# =============================================================================
# Configuration
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"
REQUEST_TIMEOUT = 30.0  # seconds

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds

# Notion caps page_size and append batches at 100
DEFAULT_PAGE_SIZE = 100
APPEND_CHUNK_SIZE = 100

TOKEN_ENV_VAR = "NOTION_API_KEY"


# =============================================================================
# Errors
# =============================================================================


class NotionAPIError(Exception):
    """A non-2xx response from the Notion API.

    Attributes:
        status: HTTP status code.
        code: Notion error code (e.g. "rate_limited", "object_not_found").
        message: Human-readable message from the response body.
        body: Parsed JSON body, or raw text when the body is not JSON.
    """

    def __init__(
        self,
        status: int,
        code: Optional[str] = None,
        message: str = "",
        body: Any = None,
    ):
        super().__init__(message or f"Notion API error ({status})")
        self.status = status
        self.code = code
        self.message = message
        self.body = body

    @property
    def is_rate_limited(self) -> bool:
        return is_rate_limit_error(self)


class CommandError(Exception):
    """A user-facing command failure (bad input, missing page, no token)."""
    pass


@dataclass
class BuildError:
    """Validation failure returned (never raised) by the builder functions.

    Attributes:
        message: What went wrong, including the offending input.
        available: Valid property names when the failure was a lookup miss.
    """
    message: str
    available: list[str] = field(default_factory=list)


def is_rate_limit_error(err: BaseException) -> bool:
    """Check whether an exception is a rate-limit signal.

    Looks only at the status/code attributes, never at message text or the
    response body. Covers NotionAPIError and httpx.HTTPStatusError.
    """
    if getattr(err, "status", None) == 429 or getattr(err, "code", None) == "rate_limited":
        return True
    response = getattr(err, "response", None)
    return getattr(response, "status_code", None) == 429


def is_notion_api_error(err: BaseException) -> bool:
    if isinstance(err, NotionAPIError):
        return True
    return isinstance(getattr(err, "status", None), int) and isinstance(getattr(err, "body", None), dict)


def get_api_error_details(err: BaseException) -> Optional[dict]:
    """Collect the fields of an API error for display.

    Returns:
        Dict with status, code and body, plus message when it adds something
        beyond body["message"]. None for anything that is not an API error.
    """
    if not is_notion_api_error(err):
        return None
    body = getattr(err, "body", None)
    details = {
        "status": getattr(err, "status", None),
        "code": getattr(err, "code", None),
        "body": body,
    }
    message = getattr(err, "message", "") or ""
    body_message = body.get("message") if isinstance(body, dict) else None
    if message and message != body_message:
        details["message"] = message
    return details


def _api_error_from_response(response: httpx.Response) -> NotionAPIError:
    """Build a NotionAPIError from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = response.text
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or ""
    else:
        code = None
        message = str(body)[:300]
    return NotionAPIError(response.status_code, code, message, body)


# =============================================================================
# Retry Engine
# =============================================================================


@dataclass
class RetryEvent:
    """Passed to on_retry callbacks before each backoff sleep."""
    attempt: int
    max_attempts: int
    delay: float
    error: BaseException


def calculate_delay(
    base_delay: float,
    attempt: int,
    jitter: bool = True,
    rand: Optional[Callable[[], float]] = None,
) -> float:
    """Compute the backoff delay after a failed attempt.

    Attempt n (1-indexed) waits base_delay * 2^(n-1). With jitter the delay is
    scaled by 0.5 + rand(), i.e. uniformly over [0.5x, 1.5x).

    Args:
        base_delay: Delay after the first failed attempt, in seconds.
        attempt: The attempt that just failed (1-indexed).
        jitter: Whether to randomize the delay.
        rand: Random source returning floats in [0, 1). Defaults to random.random.

    Returns:
        Delay in seconds.
    """
    delay = base_delay * (2 ** (attempt - 1))
    if not jitter:
        return delay
    r = rand() if rand is not None else random.random()
    return max(0.0, delay * (0.5 + r))


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
    jitter: bool = True,
    rand: Callable[[], float] = random.random,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[RetryEvent], None]] = None,
) -> T:
    """Await fn(), retrying only on rate-limit errors with exponential backoff.

    Any other exception propagates immediately. After max_attempts rate-limited
    failures the last error propagates unchanged.

    Args:
        fn: Zero-argument callable returning a fresh awaitable per attempt.
        max_attempts: Total number of calls, including the first.
        base_delay: Backoff base in seconds.
        jitter: Randomize each delay over [0.5x, 1.5x).
        rand: Random source for jitter.
        sleep: Async sleep function (injectable for tests).
        on_retry: Called with a RetryEvent before each sleep. When omitted the
            retry is logged at WARNING instead.

    Returns:
        Whatever fn's awaitable resolves to.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if not is_rate_limit_error(e) or attempt >= max_attempts:
                raise
            delay = calculate_delay(base_delay, attempt, jitter, rand)
            if on_retry is not None:
                on_retry(RetryEvent(attempt, max_attempts, delay, e))
            else:
                logger.warning(
                    f"Rate limited, retrying in {max(0.1, delay):.1f}s "
                    f"(attempt {attempt}/{max_attempts})"
                )
            await sleep(delay)

    raise AssertionError("unreachable")


class RetryingClient:
    """Proxy that routes every coroutine method of a client through with_retry.

    Nested endpoint namespaces (e.g. client.blocks.children) are wrapped
    recursively, so call sites never deal with retries themselves. Plain
    attributes pass through untouched.
    """

    def __init__(self, target: Any, **retry_options: Any):
        self._target = target
        self._retry_options = retry_options

    def __getattr__(self, name: str) -> Any:
        value = getattr(self._target, name)
        if inspect.iscoroutinefunction(value):
            @functools.wraps(value)
            async def call(*args: Any, **kwargs: Any) -> Any:
                return await with_retry(lambda: value(*args, **kwargs), **self._retry_options)
            return call
        if isinstance(value, _Endpoint):
            return RetryingClient(value, **self._retry_options)
        return value

    async def __aenter__(self) -> "RetryingClient":
        await self._target.__aenter__()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self._target.__aexit__(*exc_info)


def with_retry_client(client: Any, **retry_options: Any) -> RetryingClient:
    """Wrap a client so every remote call retries on rate limits."""
    return RetryingClient(client, **retry_options)


# =============================================================================
# Notion Client
# =============================================================================


def _compact(values: dict) -> dict:
    """Drop None-valued keys."""
    return {k: v for k, v in values.items() if v is not None}


class NotionClient:
    """Async Notion API client with namespaced endpoints.

    Every non-2xx response raises NotionAPIError. Retries are not handled here;
    wrap the client with with_retry_client() (or use create_notion_client()).

    Example:
        async with create_notion_client(token) as notion:
            page = await notion.pages.retrieve(page_id)
            children = await notion.blocks.children.list(page_id)
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = NOTION_API_BASE,
        version: str = NOTION_VERSION,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": version,
                "Content-Type": "application/json",
            },
        )
        self.data_sources = DataSourcesEndpoint(self)
        self.pages = PagesEndpoint(self)
        self.blocks = BlocksEndpoint(self)
        self.users = UsersEndpoint(self)
        self.comments = CommentsEndpoint(self)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request and return the decoded JSON body."""
        logger.debug(f"{method} {path}")
        response = await self._http.request(
            method,
            path,
            params=_compact(params) if params else None,
            json=json_body,
        )
        if response.is_error:
            raise _api_error_from_response(response)
        return response.json()

    async def search(
        self,
        query: Optional[str] = None,
        start_cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> dict:
        body = _compact({"query": query, "start_cursor": start_cursor, "page_size": page_size})
        return await self.request("POST", "/search", json_body=body)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class _Endpoint:
    """Base for endpoint namespaces hanging off NotionClient."""

    def __init__(self, client: NotionClient):
        self._client = client


class DataSourcesEndpoint(_Endpoint):
    async def retrieve(self, data_source_id: str) -> dict:
        return await self._client.request("GET", f"/data_sources/{data_source_id}")

    async def query(
        self,
        data_source_id: str,
        *,
        filter_obj: Optional[dict] = None,
        sorts: Optional[list] = None,
        start_cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> dict:
        body = _compact({
            "filter": filter_obj,
            "sorts": sorts,
            "start_cursor": start_cursor,
            "page_size": page_size,
        })
        return await self._client.request(
            "POST", f"/data_sources/{data_source_id}/query", json_body=body
        )


class PagesEndpoint(_Endpoint):
    async def create(self, parent: dict, properties: dict) -> dict:
        return await self._client.request(
            "POST", "/pages", json_body={"parent": parent, "properties": properties}
        )

    async def retrieve(self, page_id: str) -> dict:
        return await self._client.request("GET", f"/pages/{page_id}")

    async def update(
        self,
        page_id: str,
        *,
        properties: Optional[dict] = None,
        archived: Optional[bool] = None,
    ) -> dict:
        body = _compact({"properties": properties, "archived": archived})
        return await self._client.request("PATCH", f"/pages/{page_id}", json_body=body)


class BlockChildrenEndpoint(_Endpoint):
    # Defined before list(), which shadows the builtin in this class body
    async def append(self, block_id: str, children: list[dict]) -> dict:
        return await self._client.request(
            "PATCH", f"/blocks/{block_id}/children", json_body={"children": children}
        )

    async def list(
        self,
        block_id: str,
        start_cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> dict:
        return await self._client.request(
            "GET",
            f"/blocks/{block_id}/children",
            params={"start_cursor": start_cursor, "page_size": page_size},
        )


class BlocksEndpoint(_Endpoint):
    def __init__(self, client: NotionClient):
        super().__init__(client)
        self.children = BlockChildrenEndpoint(client)

    async def retrieve(self, block_id: str) -> dict:
        return await self._client.request("GET", f"/blocks/{block_id}")

    async def update(self, block_id: str, body: dict) -> dict:
        return await self._client.request("PATCH", f"/blocks/{block_id}", json_body=body)

    async def delete(self, block_id: str) -> dict:
        return await self._client.request("DELETE", f"/blocks/{block_id}")


class UsersEndpoint(_Endpoint):
    async def list(
        self,
        start_cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> dict:
        return await self._client.request(
            "GET", "/users", params={"start_cursor": start_cursor, "page_size": page_size}
        )

    async def retrieve(self, user_id: str) -> dict:
        return await self._client.request("GET", f"/users/{user_id}")

    async def me(self) -> dict:
        return await self._client.request("GET", "/users/me")


class CommentsEndpoint(_Endpoint):
    async def create(self, page_id: str, rich_text: list[dict]) -> dict:
        return await self._client.request(
            "POST",
            "/comments",
            json_body={"parent": {"page_id": page_id}, "rich_text": rich_text},
        )

    async def list(
        self,
        block_id: str,
        start_cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> dict:
        return await self._client.request(
            "GET",
            "/comments",
            params={"block_id": block_id, "start_cursor": start_cursor, "page_size": page_size},
        )


def create_notion_client(token: str, **retry_options: Any) -> RetryingClient:
    """Create a NotionClient whose every call retries on rate limits."""
    return with_retry_client(NotionClient(token), **retry_options)


# =============================================================================
# Pagination Engine
# =============================================================================


@dataclass
class PaginationResult:
    """Accumulated results of a paginated list call.

    has_more and next_cursor describe the final state after truncation, not the
    raw flags of the last page fetched. response mirrors the last raw page with
    results, has_more and next_cursor replaced accordingly.
    """
    results: list
    has_more: bool
    next_cursor: Optional[str]
    truncated: bool
    response: dict


async def paginate(
    fetch_page: Callable[[Optional[str], int], Awaitable[dict]],
    *,
    limit: Optional[int] = None,
    page_size_limit: int = DEFAULT_PAGE_SIZE,
) -> PaginationResult:
    """Drive a cursor-paginated endpoint until exhausted or the limit is met.

    Pages are fetched strictly sequentially, each request using the cursor the
    previous page returned.

    Args:
        fetch_page: Called as fetch_page(start_cursor, page_size); returns the raw
            {results, has_more, next_cursor} envelope.
        limit: Maximum number of results to return. None fetches everything.
        page_size_limit: Largest page size to request.

    Returns:
        PaginationResult. truncated is True when the limit stopped accumulation
        while more data existed upstream.

    Raises:
        ValueError: If limit is negative.
    """
    if limit is not None and limit < 0:
        raise ValueError(f"Invalid limit: {limit}")

    results: list = []
    cursor: Optional[str] = None
    has_more = True
    truncated = False
    last_page: Optional[dict] = None

    while has_more:
        remaining = None if limit is None else limit - len(results)
        if remaining is not None and remaining <= 0:
            truncated = True
            break

        page_size = page_size_limit if remaining is None else min(page_size_limit, remaining)
        page = await fetch_page(cursor, page_size)
        last_page = page

        page_results = page.get("results") or []
        if remaining is not None and len(page_results) > remaining:
            # Server returned more than asked for; cut mid-page
            results.extend(page_results[:remaining])
            truncated = True
            cursor = page.get("next_cursor")
            break

        results.extend(page_results)
        has_more = bool(page.get("has_more"))
        cursor = page.get("next_cursor")

        if limit is not None and len(results) >= limit and has_more:
            truncated = True
            break

    final_cursor = cursor if truncated else None
    if truncated:
        logger.debug(f"Pagination truncated at {len(results)} results")

    response = dict(last_page) if last_page is not None else {"object": "list"}
    response.update(results=results, has_more=truncated, next_cursor=final_cursor)

    return PaginationResult(
        results=results,
        has_more=truncated,
        next_cursor=final_cursor,
        truncated=truncated,
        response=response,
    )


# =============================================================================
# Schema Resolution
# =============================================================================


@dataclass(frozen=True)
class SchemaEntry:
    """A property's type and its display name as declared on the data source."""
    type: str
    name: str


Schema = dict[str, SchemaEntry]


def schema_from_properties(properties: dict) -> Schema:
    """Build a case-insensitive schema map keyed by lowercased display name.

    Names that collide after lowercasing keep the last declaration.
    """
    schema: Schema = {}
    for name, prop in properties.items():
        schema[name.lower()] = SchemaEntry(type=prop.get("type", ""), name=name)
    return schema


async def get_data_source_schema(client: Any, data_source_id: str) -> Schema:
    """Fetch a data source and return its property schema.

    Rebuilt on every call; there is no cache.
    """
    data_source = await client.data_sources.retrieve(data_source_id)
    return schema_from_properties(data_source.get("properties", {}))


def schema_property_names(schema: Schema) -> list[str]:
    return [entry.name for entry in schema.values()]


def resolve_sort(schema: Schema, sort_str: str) -> list[dict] | BuildError:
    """Turn "Key:desc" into a Notion sorts list. Anything but "desc" is ascending."""
    key, _, direction = sort_str.partition(":")
    entry = schema.get(key.lower())
    if entry is None:
        return BuildError(
            f'Sort property "{key}" not found.',
            available=schema_property_names(schema),
        )
    return [{
        "property": entry.name,
        "direction": "descending" if direction == "desc" else "ascending",
    }]


# =============================================================================
# Filter Building
# =============================================================================

# Two-character operators first so ">=" never parses as ">" with value "=..."
FILTER_OPERATORS = (">=", "<=", "!=", ">", "<", "=")

TRUTHY_VALUES = frozenset({"true", "1", "yes"})

RELATIVE_DATE_OFFSETS = {
    "today": 0,
    "yesterday": -1,
    "tomorrow": 1,
    "last_week": -7,
    "last-week": -7,
    "next_week": 7,
    "next-week": 7,
}

# (condition for "=", condition for "!=") where it differs from equals/does_not_equal
_EQUALITY_CONDITIONS = {
    "title": ("contains", "does_not_contain"),
    "rich_text": ("contains", "does_not_contain"),
    "multi_select": ("contains", "does_not_contain"),
}

_NUMERIC_CONDITIONS = {
    ">": "greater_than",
    "<": "less_than",
    ">=": "greater_than_or_equal_to",
    "<=": "less_than_or_equal_to",
}

_DATE_CONDITIONS = {
    ">": "after",
    "<": "before",
    ">=": "on_or_after",
    "<=": "on_or_before",
}

# Types whose filters have no ordering conditions
_UNORDERED_TYPES = frozenset({
    "title", "rich_text", "select", "multi_select", "checkbox", "status",
})


@dataclass
class ParsedFilter:
    """A single `key<op>value` filter string split into its parts."""
    key: str
    operator: str
    value: str


def parse_filter_operator(filter_str: str) -> ParsedFilter | BuildError:
    """Split a filter string on the first operator found.

    Operators are tried in FILTER_OPERATORS order; for each, only its first
    occurrence counts and it must not be at index 0 (the key can't be empty).

    Examples:
        "Status=Active"       -> ("Status", "=", "Active")
        "Count>=10"           -> ("Count", ">=", "10")
        "Date<=2026-01-01"    -> ("Date", "<=", "2026-01-01")
    """
    for op in FILTER_OPERATORS:
        idx = filter_str.find(op)
        if idx > 0:
            return ParsedFilter(
                key=filter_str[:idx],
                operator=op,
                value=filter_str[idx + len(op):],
            )
    return BuildError(
        f"Invalid filter format: {filter_str} (expected key=value, key>value, etc.)"
    )


def resolve_relative_date(value: str, today: Optional[date] = None) -> str:
    """Resolve today/yesterday/tomorrow/last_week/next_week to YYYY-MM-DD.

    Matching is case-insensitive and uses the local calendar date. Anything
    else (absolute dates, datetimes) is returned unchanged.
    """
    offset = RELATIVE_DATE_OFFSETS.get(value.lower())
    if offset is None:
        return value
    base = today or date.today()
    return (base + timedelta(days=offset)).isoformat()


# Plain decimal with optional exponent; no underscores, no non-ASCII digits
_NUMBER_PATTERN = re.compile(r'[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?', re.ASCII)


def _parse_number(value: str) -> Optional[int | float]:
    """Parse an int or finite float; None if the string isn't numeric."""
    text = value.strip()
    if not _NUMBER_PATTERN.fullmatch(text):
        return None
    if not any(c in text for c in ".eE"):
        return int(text)
    number = float(text)
    return number if math.isfinite(number) else None


def _parse_checkbox(value: str) -> bool:
    return value in TRUTHY_VALUES


def operator_to_condition(prop_type: str, operator: str, value: Any) -> Optional[dict]:
    """Map an operator and property type to a Notion filter condition.

    Returns:
        {prop_type: {condition: value}}, or None when the operator has no
        meaning for the type (e.g. ">" on a select).
    """
    if operator in ("=", "!="):
        positive, negative = _EQUALITY_CONDITIONS.get(prop_type, ("equals", "does_not_equal"))
        condition = positive if operator == "=" else negative
    elif prop_type in _UNORDERED_TYPES:
        return None
    elif prop_type == "date":
        condition = _DATE_CONDITIONS.get(operator)
    else:
        # number, and passthrough for anything else
        condition = _NUMERIC_CONDITIONS.get(operator)

    if condition is None:
        return None
    return {prop_type: {condition: value}}


def build_filter_from_schema(schema: Schema, filter_str: str) -> dict | BuildError:
    """Build a Notion filter condition from one filter string.

    Relative date keywords are resolved for date properties, numbers and
    checkboxes are coerced.

    Args:
        schema: Schema map from get_data_source_schema().
        filter_str: e.g. "Status=Active", "Priority>=3", "Due<today".

    Returns:
        {"property": name, <type>: {...}} or a BuildError.
    """
    parsed = parse_filter_operator(filter_str)
    if isinstance(parsed, BuildError):
        return parsed

    entry = schema.get(parsed.key.lower())
    if entry is None:
        return BuildError(
            f'Filter property "{parsed.key}" not found in database schema.',
            available=schema_property_names(schema),
        )

    value: Any = parsed.value
    if entry.type == "date":
        value = resolve_relative_date(value)
    elif entry.type == "number":
        value = _parse_number(parsed.value)
        if value is None:
            return BuildError(f'Invalid number value: "{parsed.value}"')
    elif entry.type == "checkbox":
        value = _parse_checkbox(value)

    condition = operator_to_condition(entry.type, parsed.operator, value)
    if condition is None:
        return BuildError(
            f'Operator "{parsed.operator}" not supported for type "{entry.type}"'
        )

    return {"property": entry.name, **condition}


def build_compound_filter(schema: Schema, filter_strs: list[str]) -> dict | BuildError:
    """Combine filter strings with AND, preserving their order.

    A single filter is returned as-is. The first failing filter aborts the
    build and its error is returned.
    """
    if not filter_strs:
        return BuildError("No filters provided")
    if len(filter_strs) == 1:
        return build_filter_from_schema(schema, filter_strs[0])

    conditions = []
    for filter_str in filter_strs:
        built = build_filter_from_schema(schema, filter_str)
        if isinstance(built, BuildError):
            return built
        conditions.append(built)
    return {"and": conditions}


# =============================================================================
# Property Values
# =============================================================================

ISO_DATE_ONLY_PATTERN = re.compile(r'(\d{4})-(\d{2})-(\d{2})')
ISO_DATE_TIME_PATTERN = re.compile(
    r'(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.\d+)?(?:Z|[+-](\d{2}):(\d{2}))'
)


def is_valid_iso_date(value: str) -> bool:
    """Accept YYYY-MM-DD (a real calendar date) or a full ISO 8601 datetime
    with Z or a ±HH:MM offset."""
    m = ISO_DATE_ONLY_PATTERN.fullmatch(value)
    if m:
        try:
            date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return False
        return True

    m = ISO_DATE_TIME_PATTERN.fullmatch(value)
    if m:
        year, month, day, hour, minute, second = (int(g) for g in m.groups()[:6])
        try:
            datetime(year, month, day, hour, minute, second)
        except ValueError:
            return False
        offset_hours, offset_minutes = m.group(7), m.group(8)
        if offset_hours is not None and (int(offset_hours) > 23 or int(offset_minutes) > 59):
            return False
        return True

    return False


def _plain_rich_text(value: str) -> list[dict]:
    return [{"type": "text", "text": {"content": value}}]


def build_property_value(prop_type: str, value: str) -> dict | BuildError:
    """Convert a raw string to a Notion property value for the given type.

    Numbers, dates, URLs and emails are validated; checkbox is permissive.
    Unknown types pass through as {prop_type: value}.

    Args:
        prop_type: Notion property type (title, rich_text, select, ...).
        value: Raw string from the command line.

    Returns:
        Notion API property value dict, or a BuildError naming the bad value.
    """
    if prop_type in ("title", "rich_text"):
        return {prop_type: _plain_rich_text(value)}
    elif prop_type == "number":
        number = _parse_number(value)
        if number is None:
            return BuildError(f'Invalid number value: "{value}"')
        return {"number": number}
    elif prop_type == "select":
        return {"select": {"name": value}}
    elif prop_type == "multi_select":
        # Comma-separated; stray commas don't produce empty options
        names = [n.strip() for n in value.split(",")]
        return {"multi_select": [{"name": n} for n in names if n]}
    elif prop_type == "date":
        if not is_valid_iso_date(value):
            return BuildError(
                f'Invalid date value: "{value}" (expected YYYY-MM-DD or full ISO 8601)'
            )
        return {"date": {"start": value}}
    elif prop_type == "checkbox":
        return {"checkbox": _parse_checkbox(value)}
    elif prop_type == "url":
        if not value.startswith(("http://", "https://")):
            return BuildError(f'Invalid URL value: "{value}" (expected http:// or https://)')
        return {"url": value}
    elif prop_type == "email":
        if "@" not in value:
            return BuildError(f'Invalid email value: "{value}" (expected "@" in address)')
        return {"email": value}
    elif prop_type == "phone_number":
        return {"phone_number": value}
    elif prop_type == "status":
        return {"status": {"name": value}}
    return {prop_type: value}


def build_properties(schema: Schema, props: Iterable[str]) -> dict | BuildError:
    """Build a Notion properties payload from "Key=Value" strings.

    Keys are matched case-insensitively against the schema and written back
    under their canonical names. The first invalid entry aborts the build.
    """
    properties: dict = {}
    for kv in props:
        key, sep, value = kv.partition("=")
        if not sep:
            return BuildError(f"Invalid property format: {kv} (expected key=value)")

        entry = schema.get(key.lower())
        if entry is None:
            return BuildError(
                f'Property "{key}" not found in database schema.',
                available=schema_property_names(schema),
            )

        built = build_property_value(entry.type, value)
        if isinstance(built, BuildError):
            return BuildError(f'Invalid value for "{entry.name}" ({entry.type}): {built.message}')
        properties[entry.name] = built
    return properties


def rich_text_to_plain(rich_text: Optional[list]) -> str:
    """Concatenate the plain text of a rich_text array."""
    if not isinstance(rich_text, list):
        return ""
    parts = []
    for item in rich_text:
        text = item.get("plain_text")
        if text is None:
            text = (item.get("text") or {}).get("content", "")
        parts.append(text)
    return "".join(parts)


def _format_number(num: Any) -> str:
    if isinstance(num, float) and num.is_integer():
        return str(int(num))
    return str(num)


def _format_date_range(date_obj: Optional[dict]) -> str:
    if not date_obj:
        return ""
    start = date_obj.get("start") or ""
    end = date_obj.get("end")
    return f"{start} → {end}" if end else start


def _user_label(user: Optional[dict]) -> str:
    if not user:
        return ""
    return user.get("name") or user.get("id") or ""


def property_value(prop: Optional[dict]) -> str:
    """Extract a displayable string from a Notion property value.

    Never raises. Relations are summarized rather than resolved to titles;
    rollup arrays are read element by element with this same function.

    Args:
        prop: Property object from page["properties"], or None.

    Returns:
        String representation of the value ("" when empty).
    """
    if not prop:
        return ""
    prop_type = prop.get("type", "")

    if prop_type in ("title", "rich_text"):
        return rich_text_to_plain(prop.get(prop_type))

    elif prop_type == "number":
        num = prop.get("number")
        return _format_number(num) if num is not None else ""

    elif prop_type in ("select", "status"):
        option = prop.get(prop_type)
        return option.get("name", "") if option else ""

    elif prop_type == "multi_select":
        return ", ".join(opt.get("name", "") for opt in prop.get("multi_select") or [])

    elif prop_type == "date":
        return _format_date_range(prop.get("date"))

    elif prop_type == "checkbox":
        return "✓" if prop.get("checkbox") else "✗"

    elif prop_type in ("url", "email", "phone_number", "created_time", "last_edited_time"):
        return prop.get(prop_type) or ""

    elif prop_type == "formula":
        formula = prop.get("formula") or {}
        if formula.get("string"):
            return formula["string"]
        if formula.get("number") is not None:
            return _format_number(formula["number"])
        if formula.get("boolean") is not None:
            return "true" if formula["boolean"] else "false"
        return (formula.get("date") or {}).get("start") or ""

    elif prop_type == "relation":
        relations = prop.get("relation") or []
        if not relations:
            return ""
        if len(relations) == 1:
            return f"→ {(relations[0].get('id') or '')[:8]}…"
        return f"→ {len(relations)} linked"

    elif prop_type == "rollup":
        rollup = prop.get("rollup")
        if not rollup:
            return ""
        rollup_type = rollup.get("type")
        if rollup_type == "number":
            num = rollup.get("number")
            return _format_number(num) if num is not None else ""
        elif rollup_type == "date":
            return _format_date_range(rollup.get("date"))
        elif rollup_type == "array":
            return ", ".join(property_value(item) for item in rollup.get("array") or [])
        return json.dumps(rollup, ensure_ascii=False, default=str)

    elif prop_type == "people":
        return ", ".join(_user_label(p) for p in prop.get("people") or [])

    elif prop_type == "files":
        files = prop.get("files") or []
        return ", ".join(
            f.get("name") or (f.get("external") or {}).get("url") or "" for f in files
        )

    elif prop_type in ("created_by", "last_edited_by"):
        return _user_label(prop.get(prop_type))

    raw = prop.get(prop_type)
    return json.dumps(raw if raw is not None else "", ensure_ascii=False, default=str)


def page_title(page: dict) -> str:
    """Text of the first title-typed property, or ""."""
    for prop in (page.get("properties") or {}).values():
        if prop.get("type") == "title":
            return property_value(prop)
    return ""


# =============================================================================
# Inline Formatting Parser (Parsy-based)
# =============================================================================


@dataclass
class RichTextSpan:
    """A run of text with optional bold/italic/code formatting or a link."""
    content: str
    bold: bool = False
    italic: bool = False
    code: bool = False
    link: Optional[str] = None

    @property
    def is_plain(self) -> bool:
        return not (self.bold or self.italic or self.code or self.link)

    def to_notion(self) -> dict:
        """Notion rich_text object. Plain spans carry no annotations or link."""
        text: dict = {"content": self.content}
        if self.link:
            text["link"] = {"url": self.link}
        obj: dict = {"type": "text", "text": text}

        annotations = {}
        if self.bold:
            annotations["bold"] = True
        if self.italic:
            annotations["italic"] = True
        if self.code:
            annotations["code"] = True
        if annotations:
            obj["annotations"] = annotations
        return obj

    @classmethod
    def from_notion(cls, item: dict) -> "RichTextSpan":
        text_obj = item.get("text") or {}
        content = item.get("plain_text")
        if content is None:
            content = text_obj.get("content", "")
        link = (text_obj.get("link") or {}).get("url") or item.get("href")
        annotations = item.get("annotations") or {}
        return cls(
            content=content,
            bold=bool(annotations.get("bold")),
            italic=bool(annotations.get("italic")),
            code=bool(annotations.get("code")),
            link=link,
        )


_LINK_PATTERN = re.compile(r'\[(.+?)\]\((.+?)\)')


def _link_span(matched: str) -> RichTextSpan:
    m = _LINK_PATTERN.match(matched)
    return RichTextSpan(m.group(1), link=m.group(2))


def _merge_plain_spans(spans: list[RichTextSpan]) -> list[RichTextSpan]:
    """Merge adjacent unformatted spans into one."""
    merged: list[RichTextSpan] = []
    for span in spans:
        if merged and span.is_plain and merged[-1].is_plain:
            merged[-1].content += span.content
        else:
            merged.append(span)
    return merged


def _make_inline_parser():
    """Build the inline formatting parser using parsy combinators.

    Recognizes **bold**, *italic*, `code` and [text](url), tried in that order
    at each position. Formatted content is not parsed recursively.
    """
    bold = P.regex(r'\*\*(.+?)\*\*').map(lambda s: RichTextSpan(s[2:-2], bold=True))
    italic = P.regex(r'\*(.+?)\*').map(lambda s: RichTextSpan(s[1:-1], italic=True))
    code = P.regex(r'`(.+?)`').map(lambda s: RichTextSpan(s[1:-1], code=True))
    link = P.regex(_LINK_PATTERN).map(_link_span)

    # Characters that may start a formatted span
    literal_run = P.regex(r'[^*`\[]+').map(RichTextSpan)
    special_fallback = P.any_char.map(RichTextSpan)

    return (bold | italic | code | link | literal_run | special_fallback).many()


# Build the parser once at module load
_inline_parser = _make_inline_parser()


def parse_inline_formatting(text: str) -> list[RichTextSpan]:
    """Parse inline markdown into rich text spans, in source order.

    Plain text between formatted spans becomes a single span. Text with no
    formatting (including "") yields exactly one plain span.
    """
    try:
        spans = _merge_plain_spans(_inline_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"Inline formatting parse error: {e}")
        return [RichTextSpan(text)]
    return spans or [RichTextSpan(text)]


def render_rich_text(spans: Iterable[RichTextSpan]) -> str:
    """Render spans back to inline markdown."""
    parts = []
    for span in spans:
        result = span.content
        if span.code:
            result = f"`{result}`"
        else:
            if span.bold:
                result = f"**{result}**"
            if span.italic:
                result = f"*{result}*"
        if span.link:
            result = f"[{result}]({span.link})"
        parts.append(result)
    return "".join(parts)


# =============================================================================
# Markdown ⇄ Blocks
# =============================================================================


class BlockType(str, Enum):
    PARAGRAPH = "paragraph"
    HEADING_1 = "heading_1"
    HEADING_2 = "heading_2"
    HEADING_3 = "heading_3"
    BULLETED_LIST_ITEM = "bulleted_list_item"
    NUMBERED_LIST_ITEM = "numbered_list_item"
    TO_DO = "to_do"
    QUOTE = "quote"
    CODE = "code"
    DIVIDER = "divider"


HEADING_PREFIXES = {
    BlockType.HEADING_1.value: "# ",
    BlockType.HEADING_2.value: "## ",
    BlockType.HEADING_3.value: "### ",
}

DEFAULT_CODE_LANGUAGE = "plain text"

_DIVIDER_PATTERN = re.compile(r'(?:-{3,}|\*{3,})\s*')
_BULLET_PATTERN = re.compile(r'[-*] ')
_NUMBERED_PATTERN = re.compile(r'\d+\.\s')


@dataclass
class Block:
    """A content block; its payload fields are meaningful per type.

    rich_text is None only for blocks whose payload carries no text (divider,
    or an unrecognized API block without a rich_text field).
    """
    type: str
    rich_text: Optional[list[RichTextSpan]] = None
    checked: Optional[bool] = None
    language: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.type, BlockType):
            self.type = self.type.value

    @property
    def plain_text(self) -> str:
        return "".join(span.content for span in self.rich_text or [])

    def to_notion(self) -> dict:
        """Notion API block object for appending."""
        payload: dict = {}
        if self.rich_text is not None:
            payload["rich_text"] = [span.to_notion() for span in self.rich_text]
        if self.type == BlockType.TO_DO:
            payload["checked"] = bool(self.checked)
        if self.type == BlockType.CODE:
            payload["language"] = self.language or DEFAULT_CODE_LANGUAGE
        return {"object": "block", "type": self.type, self.type: payload}

    @classmethod
    def from_notion(cls, block: dict) -> "Block":
        block_type = block.get("type", "")
        payload = block.get(block_type) or {}
        rich_text = payload.get("rich_text")
        return cls(
            type=block_type,
            rich_text=(
                [RichTextSpan.from_notion(item) for item in rich_text]
                if isinstance(rich_text, list) else None
            ),
            checked=payload.get("checked"),
            language=payload.get("language"),
            id=block.get("id"),
        )


def _text_block(block_type: BlockType, text: str, **kwargs: Any) -> Block:
    return Block(type=block_type, rich_text=parse_inline_formatting(text), **kwargs)


def markdown_to_blocks(markdown: str) -> list[Block]:
    """Parse markdown into blocks, one forward pass over the lines.

    Per-line precedence: fenced code, divider, headings (### before ## before #),
    quote, to-do, bullet, numbered item, blank (skipped), paragraph. Only fenced
    code looks ahead, consuming lines up to the closing fence verbatim.
    """
    lines = [line.removesuffix("\r") for line in markdown.split("\n")]
    blocks: list[Block] = []
    i = 0

    while i < len(lines):
        line = lines[i]
        i += 1

        if line.startswith("```"):
            language = line[3:].strip() or DEFAULT_CODE_LANGUAGE
            code_lines = []
            while i < len(lines) and not lines[i].startswith("```"):
                code_lines.append(lines[i])
                i += 1
            i += 1  # closing fence
            blocks.append(Block(
                type=BlockType.CODE,
                rich_text=[RichTextSpan("\n".join(code_lines))],
                language=language,
            ))
            continue

        if _DIVIDER_PATTERN.fullmatch(line):
            blocks.append(Block(type=BlockType.DIVIDER))
        elif line.startswith("### "):
            blocks.append(_text_block(BlockType.HEADING_3, line[4:]))
        elif line.startswith("## "):
            blocks.append(_text_block(BlockType.HEADING_2, line[3:]))
        elif line.startswith("# "):
            blocks.append(_text_block(BlockType.HEADING_1, line[2:]))
        elif line.startswith("> "):
            blocks.append(_text_block(BlockType.QUOTE, line[2:]))
        elif line.startswith(("- [ ] ", "- [x] ")):
            # Before bullets: both start with "- "
            blocks.append(_text_block(BlockType.TO_DO, line[6:], checked=line.startswith("- [x] ")))
        elif _BULLET_PATTERN.match(line):
            blocks.append(_text_block(BlockType.BULLETED_LIST_ITEM, line[2:]))
        elif m := _NUMBERED_PATTERN.match(line):
            blocks.append(_text_block(BlockType.NUMBERED_LIST_ITEM, line[m.end():]))
        elif not line.strip():
            continue
        else:
            blocks.append(_text_block(BlockType.PARAGRAPH, line))

    return blocks


def blocks_to_notion(blocks: Iterable[Block]) -> list[dict]:
    return [block.to_notion() for block in blocks]


def blocks_to_markdown(blocks: Iterable[Block | dict]) -> str:
    """Render blocks to markdown, one or more lines per block.

    Accepts Block objects or raw Notion block dicts. Blank lines between
    paragraphs are not reconstructed, so markdown -> blocks -> markdown is lossy
    in that respect.
    """
    lines: list[str] = []
    for block in blocks:
        if isinstance(block, dict):
            block = Block.from_notion(block)
        text = render_rich_text(block.rich_text or [])

        if block.type in HEADING_PREFIXES:
            lines.append(f"{HEADING_PREFIXES[block.type]}{text}")
        elif block.type == BlockType.PARAGRAPH:
            lines.append(text)
        elif block.type == BlockType.BULLETED_LIST_ITEM:
            lines.append(f"- {text}")
        elif block.type == BlockType.NUMBERED_LIST_ITEM:
            lines.append(f"1. {text}")
        elif block.type == BlockType.TO_DO:
            check = "x" if block.checked else " "
            lines.append(f"- [{check}] {text}")
        elif block.type == BlockType.QUOTE:
            lines.append(f"> {text}")
        elif block.type == BlockType.CODE:
            language = block.language or ""
            lines.append(f"```{language}")
            lines.append(block.plain_text)
            lines.append("```")
        elif block.type == BlockType.DIVIDER:
            lines.append("---")
        elif block.rich_text is not None:
            lines.append(text)
    return "\n".join(lines)


# =============================================================================
# Dynamic Property Flags
# =============================================================================


def kebab_to_property(flag: str, schema: Schema) -> Optional[SchemaEntry]:
    """Match a kebab-case flag name against the schema.

    Tries the name as-is, then with dashes as spaces, then title-cased:
    --due-date -> "Due Date", --status -> "Status".
    """
    clean = flag.lstrip("-")
    candidates = (
        clean,
        clean.replace("-", " "),
        " ".join(word[:1].upper() + word[1:] for word in clean.split("-")),
    )
    for candidate in candidates:
        entry = schema.get(candidate.lower())
        if entry is not None:
            return entry
    return None


def extract_dynamic_props(
    argv: list[str],
    known_flags: Iterable[str],
    schema: Schema,
) -> list[str]:
    """Turn unrecognized --flag value pairs into "Name=value" property strings.

    Flags in known_flags (with or without leading dashes) are skipped. A flag
    that matches a schema property consumes the next token as its value,
    unless that token is itself a --flag. Unmatched flags are ignored.
    """
    known = set(known_flags)
    props = []
    i = 0
    while i < len(argv):
        arg = argv[i]
        i += 1
        if not arg.startswith("--") or arg == "--":
            continue
        flag_name = arg[2:]
        if flag_name in known or arg in known:
            continue
        entry = kebab_to_property(flag_name, schema)
        if entry is not None and i < len(argv) and not argv[i].startswith("--"):
            props.append(f"{entry.name}={argv[i]}")
            i += 1
    return props


# =============================================================================
# Output Formatting
# =============================================================================

MAX_COLUMN_WIDTH = 50


def pages_to_rows(pages: Iterable[dict]) -> list[dict[str, str]]:
    """Flatten pages into rows of id plus one display string per property."""
    rows = []
    for page in pages:
        row = {"id": page.get("id", "")}
        for name, prop in (page.get("properties") or {}).items():
            row[name] = property_value(prop)
        rows.append(row)
    return rows


def _truncate_cell(value: str) -> str:
    if len(value) > MAX_COLUMN_WIDTH:
        return value[:MAX_COLUMN_WIDTH - 3] + "..."
    return value


def format_table(rows: list[dict], columns: list[str]) -> str:
    if not rows:
        return "(no results)"

    widths = {col: len(col) for col in columns}
    for row in rows:
        for col in columns:
            widths[col] = max(widths[col], len(str(row.get(col, ""))))
    widths = {col: min(width, MAX_COLUMN_WIDTH) for col, width in widths.items()}

    lines = [
        " │ ".join(col.ljust(widths[col]) for col in columns),
        "─┼─".join("─" * widths[col] for col in columns),
    ]
    for row in rows:
        lines.append(" │ ".join(
            _truncate_cell(str(row.get(col, ""))).ljust(widths[col]) for col in columns
        ))

    lines.append("")
    lines.append(f"{len(rows)} result{'' if len(rows) == 1 else 's'}")
    return "\n".join(lines)


def _csv_escape(value: str) -> str:
    """Escape a value for CSV output.

    Rules:
    - If value contains comma, quote, or newline → wrap in double quotes
    - Double quotes inside are escaped by doubling: " → ""
    """
    if not value:
        return ""
    if any(c in value for c in ',"\n\r'):
        escaped = value.replace('"', '""')
        return f'"{escaped}"'
    return value


def format_csv(rows: list[dict], columns: list[str]) -> str:
    if not rows:
        return "(no results)"
    lines = [",".join(_csv_escape(col) for col in columns)]
    for row in rows:
        lines.append(",".join(_csv_escape(str(row.get(col, ""))) for col in columns))
    return "\n".join(lines)


def format_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def format_yaml(rows: list[dict], columns: list[str]) -> str:
    """Render rows as a YAML list of mappings, keys in column order."""
    if not rows:
        return "(no results)"
    data = [{col: str(row.get(col, "")) for col in columns} for row in rows]
    return yaml.safe_dump(
        data,
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
    ).rstrip("\n")


OUTPUT_FORMATS = ("table", "csv", "json", "yaml")


def format_rows(rows: list[dict], columns: list[str], fmt: str = "table") -> str:
    if fmt == "csv":
        return format_csv(rows, columns)
    if fmt == "yaml":
        return format_yaml(rows, columns)
    if fmt == "json":
        return format_json(rows)
    return format_table(rows, columns)


# =============================================================================
# Commands
# =============================================================================


def _describe_build_error(error: BuildError) -> str:
    if error.available:
        return f"{error.message}\nAvailable: {', '.join(error.available)}"
    return error.message


def _unwrap(built: T | BuildError) -> T:
    """Return a builder's value, or raise CommandError for a BuildError."""
    if isinstance(built, BuildError):
        raise CommandError(_describe_build_error(built))
    return built


async def _append_in_chunks(client: Any, block_id: str, blocks: list[Block]) -> None:
    payload = blocks_to_notion(blocks)
    for start in range(0, len(payload), APPEND_CHUNK_SIZE):
        await client.blocks.children.append(block_id, payload[start:start + APPEND_CHUNK_SIZE])


async def _collect_properties(
    client: Any,
    data_source_id: str,
    args: argparse.Namespace,
    extras: list[str],
) -> tuple[Schema, list[str]]:
    """Fetch the schema and merge --prop values with dynamic --<property> flags."""
    schema = await get_data_source_schema(client, data_source_id)
    dynamic = extract_dynamic_props(extras, args.known_flags, schema)
    for arg in extras:
        if arg.startswith("--") and kebab_to_property(arg, schema) is None:
            logger.debug(f"Ignoring unrecognized flag {arg}")
    return schema, list(args.prop or []) + dynamic


async def cmd_query(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    """Query a data source with optional filters, sort and limit."""
    data_source_id = args.data_source
    filter_obj = None
    sorts = None
    if args.filter or args.sort:
        schema = await get_data_source_schema(client, data_source_id)
        if args.filter:
            filter_obj = _unwrap(build_compound_filter(schema, args.filter))
        if args.sort:
            sorts = _unwrap(resolve_sort(schema, args.sort))

    async def fetch_page(start_cursor: Optional[str], page_size: int) -> dict:
        return await client.data_sources.query(
            data_source_id,
            filter_obj=filter_obj,
            sorts=sorts,
            start_cursor=start_cursor,
            page_size=page_size,
        )

    result = await paginate(fetch_page, limit=args.limit)
    if result.truncated:
        logger.warning(
            f"Results truncated to {args.limit}. Raise --limit or omit it to fetch all results."
        )

    # --output wins over the --json shorthand
    fmt = args.output or ("json" if args.json else "table")
    if fmt == "json":
        return format_json(result.response)

    rows = pages_to_rows(result.results)
    if not rows:
        return "(no results)"
    return format_rows(rows, list(rows[0].keys()), fmt)


async def _relation_titles(client: Any, prop: dict) -> str:
    """Resolve each related page to its title, falling back to a short ID."""
    titles = []
    for rel in prop.get("relation") or []:
        rel_id = rel.get("id") or ""
        if not rel_id:
            titles.append("(unknown)")
            continue
        try:
            linked = await client.pages.retrieve(rel_id)
        except NotionAPIError as e:
            logger.debug(f"Could not resolve relation {rel_id}: {e}")
            linked = {}
        titles.append(page_title(linked) or f"{rel_id[:8]}…")
    return ", ".join(titles) if titles else "(none)"


async def cmd_get(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    page = await client.pages.retrieve(args.page_id)
    if args.json:
        return format_json(page)

    lines = [
        f"Page: {page.get('id', '')}",
        f"URL:  {page.get('url', '')}",
        f"Created: {page.get('created_time', '')}",
        f"Updated: {page.get('last_edited_time', '')}",
        "",
        "Properties:",
    ]
    for name, prop in (page.get("properties") or {}).items():
        if prop.get("type") == "relation":
            value = await _relation_titles(client, prop)
        else:
            value = property_value(prop)
        lines.append(f"  {name}: {value}")
    return "\n".join(lines)


def _read_body_file(path_str: str) -> list[Block]:
    path = Path(path_str).expanduser()
    if not path.exists():
        raise CommandError(f"File not found: {path}")
    content = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".md", ".markdown"):
        return markdown_to_blocks(content)
    return [Block(type=BlockType.PARAGRAPH, rich_text=[RichTextSpan(content)])]


async def cmd_add(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    """Create a page in a data source from --prop and --<property> flags."""
    data_source_id = args.data_source
    schema, all_props = await _collect_properties(client, data_source_id, args, extras)
    if not all_props:
        flags = ", ".join(
            f"--{name.lower().replace(' ', '-')}" for name in schema_property_names(schema)
        )
        raise CommandError(
            "No properties provided. Use property flags or --prop:\n"
            f'  notion add {data_source_id} --name "My Page" --status "Active"\n'
            f'  notion add {data_source_id} --prop "Name=My Page"\n'
            f"Available: {flags}"
        )

    properties = _unwrap(build_properties(schema, all_props))
    body_blocks = _read_body_file(args.from_file) if args.from_file else []

    page = await client.pages.create(
        parent={"type": "data_source_id", "data_source_id": data_source_id},
        properties=properties,
    )
    if body_blocks:
        await _append_in_chunks(client, page["id"], body_blocks)

    if args.json:
        return format_json(page)
    lines = [f"Created page: {page['id']}", f"   URL: {page.get('url', '')}"]
    if args.from_file:
        lines.append(f"   Content imported from: {args.from_file}")
    return "\n".join(lines)


async def cmd_update(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    page = await client.pages.retrieve(args.page_id)
    data_source_id = (page.get("parent") or {}).get("data_source_id")
    if not data_source_id:
        raise CommandError("Page is not in a database; cannot detect property types.")

    schema, all_props = await _collect_properties(client, data_source_id, args, extras)
    if not all_props:
        raise CommandError(
            "No properties to update. Use property flags or --prop:\n"
            f'  notion update {args.page_id} --status "Done"'
        )

    properties = _unwrap(build_properties(schema, all_props))
    updated = await client.pages.update(args.page_id, properties=properties)
    if args.json:
        return format_json(updated)
    return f"Updated page: {updated['id']}"


async def cmd_delete(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    page = await client.pages.update(args.page_id, archived=True)
    if args.json:
        return format_json(page)
    return f"Archived page: {page['id']}\n   (Restore it from the trash in Notion if needed)"


async def cmd_blocks(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    """Render a page's top-level blocks as markdown."""
    result = await paginate(
        lambda start_cursor, page_size: client.blocks.children.list(
            args.page_id, start_cursor=start_cursor, page_size=page_size
        ),
        limit=args.limit,
    )
    if args.json:
        return format_json(result.response)
    if not result.results:
        return "(no blocks)"
    return blocks_to_markdown(result.results)


async def cmd_append(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    if args.from_file:
        blocks = _read_body_file(args.from_file)
    elif args.text is not None:
        blocks = markdown_to_blocks(args.text)
    else:
        raise CommandError("Nothing to append. Pass markdown text or --from <file>.")
    if not blocks:
        raise CommandError("Nothing to append: the markdown produced no blocks.")

    await _append_in_chunks(client, args.page_id, blocks)
    return f"Appended {len(blocks)} block{'' if len(blocks) == 1 else 's'} to {args.page_id}"


# Block types whose payload is just rich_text
TEXT_EDITABLE_BLOCK_TYPES = frozenset({
    "paragraph", "heading_1", "heading_2", "heading_3",
    "bulleted_list_item", "numbered_list_item", "quote", "callout", "toggle",
})


async def cmd_block_edit(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    """Replace a block's text, keeping its type and checked/language state.

    Inline markdown is parsed for text blocks; code blocks take the text verbatim.
    """
    block = await client.blocks.retrieve(args.block_id)
    block_type = block.get("type", "")
    payload = block.get(block_type) or {}

    if block_type == BlockType.CODE:
        body = {
            "rich_text": [RichTextSpan(args.text).to_notion()],
            "language": payload.get("language") or DEFAULT_CODE_LANGUAGE,
        }
    else:
        rich_text = [span.to_notion() for span in parse_inline_formatting(args.text)]
        if block_type == BlockType.TO_DO:
            body = {"rich_text": rich_text, "checked": bool(payload.get("checked"))}
        elif block_type in TEXT_EDITABLE_BLOCK_TYPES:
            body = {"rich_text": rich_text}
        else:
            raise CommandError(
                f'Block type "{block_type}" doesn\'t support text editing.\n'
                "Supported types: paragraph, headings, lists, to_do, quote, callout, toggle, code"
            )

    updated = await client.blocks.update(args.block_id, {block_type: body})
    if args.json:
        return format_json(updated)
    return f"Updated {block_type} block: {args.block_id[:8]}…"


async def cmd_block_delete(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    deleted = await client.blocks.delete(args.block_id)
    if args.json:
        return format_json(deleted)
    return f"Deleted block: {args.block_id[:8]}…"


async def cmd_search(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    result = await paginate(
        lambda start_cursor, page_size: client.search(
            args.query, start_cursor=start_cursor, page_size=page_size
        ),
        limit=args.limit,
    )
    if args.json:
        return format_json(result.response)

    rows = []
    for item in result.results:
        if item.get("object") in ("data_source", "database"):
            title = rich_text_to_plain(item.get("title"))
        else:
            title = page_title(item)
        rows.append({
            "id": item.get("id", ""),
            "type": item.get("object", ""),
            "title": title or "(untitled)",
            "url": item.get("url", ""),
        })
    return format_table(rows, ["id", "type", "title", "url"])


async def cmd_users(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    result = await paginate(
        lambda start_cursor, page_size: client.users.list(
            start_cursor=start_cursor, page_size=page_size
        ),
    )
    if args.json:
        return format_json(result.response)
    rows = [
        {
            "id": user.get("id", ""),
            "name": user.get("name") or "",
            "type": user.get("type") or "",
            "email": (user.get("person") or {}).get("email", ""),
        }
        for user in result.results
    ]
    return format_table(rows, ["id", "name", "type", "email"])


async def cmd_user(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    user = await client.users.retrieve(args.user_id)
    if args.json:
        return format_json(user)
    lines = [
        f"User: {user.get('id', '')}",
        f"Name: {user.get('name') or '(unnamed)'}",
        f"Type: {user.get('type') or ''}",
    ]
    email = (user.get("person") or {}).get("email")
    if email:
        lines.append(f"Email: {email}")
    if user.get("avatar_url"):
        lines.append(f"Avatar: {user['avatar_url']}")
    if user.get("bot") is not None:
        owner = (user.get("bot") or {}).get("owner") or {}
        lines.append(f"Bot Owner: {json.dumps(owner, ensure_ascii=False)}")
    return "\n".join(lines)


async def cmd_me(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    me = await client.users.me()
    if args.json:
        return format_json(me)
    lines = [
        f"Bot: {me.get('name') or '(unnamed)'}",
        f"ID: {me.get('id', '')}",
        f"Type: {me.get('type', '')}",
    ]
    owner = (me.get("bot") or {}).get("owner")
    if owner:
        if owner.get("type") == "workspace":
            lines.append("Owner: Workspace")
        else:
            lines.append(f"Owner: {(owner.get('user') or {}).get('name') or owner.get('type')}")
    return "\n".join(lines)


async def cmd_comments(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    result = await paginate(
        lambda start_cursor, page_size: client.comments.list(
            args.page_id, start_cursor=start_cursor, page_size=page_size
        ),
    )
    if args.json:
        return format_json(result.response)
    if not result.results:
        return "(no comments)"
    rows = [
        {
            "id": comment.get("id", ""),
            "text": rich_text_to_plain(comment.get("rich_text")),
            "created": comment.get("created_time", ""),
            "author": _user_label(comment.get("created_by")),
        }
        for comment in result.results
    ]
    return format_table(rows, ["id", "text", "created", "author"])


async def cmd_comment(client: Any, args: argparse.Namespace, extras: list[str]) -> str:
    rich_text = [span.to_notion() for span in parse_inline_formatting(args.text)]
    comment = await client.comments.create(args.page_id, rich_text)
    if args.json:
        return format_json(comment)
    return f"Comment added: {comment['id']}"


# =============================================================================
# Main Entry Point
# =============================================================================


def _load_token(token_file: Optional[str]) -> str:
    """Read the API token from --token-file, falling back to NOTION_API_KEY."""
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            raise CommandError(f"Token file not found: {token_path}")
        token = token_path.read_text().strip()
        if not token:
            raise CommandError(f"Token file is empty: {token_path}")
        logger.debug(f"Notion token loaded from {token_path}")
        return token

    token = os.environ.get(TOKEN_ENV_VAR, "").strip()
    if token:
        return token
    raise CommandError(
        "No Notion API key found.\n"
        "Set it up with one of:\n"
        "  1. notion --token-file ~/.notion-token <command>\n"
        f"  2. export {TOKEN_ENV_VAR}=ntn_your_api_key\n"
        "Get a key at: https://www.notion.so/profile/integrations"
    )


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid limit: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"invalid limit: {value!r}")
    return number


def _option_names(action: argparse.Action) -> list[str]:
    return [opt.lstrip("-") for opt in action.option_strings]


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common_flags = ["h", "help"]
    common_flags += _option_names(common.add_argument(
        "--json", action="store_true", help="Print the raw API response as JSON",
    ))
    common_flags += _option_names(common.add_argument(
        "--token-file",
        help=f"Path to file containing the Notion API token (default: ${TOKEN_ENV_VAR})",
    ))
    common_flags += _option_names(common.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging",
    ))

    parser = argparse.ArgumentParser(prog="notion", description="Notion command-line client")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_command(name, handler, help_text, dynamic_props=False):
        sub = subparsers.add_parser(
            name, parents=[common], help=help_text, description=help_text, allow_abbrev=False
        )
        sub.set_defaults(handler=handler, dynamic_props=dynamic_props, known_flags=list(common_flags))
        return sub

    def add_option(sub, *names, **kwargs):
        action = sub.add_argument(*names, **kwargs)
        sub.get_default("known_flags").extend(_option_names(action))
        return action

    def prop_option(sub):
        add_option(
            sub, "--prop", action="append", default=[], metavar="KEY=VALUE",
            help='Property value, repeatable (e.g. --prop "Status=Done")',
        )

    sub = add_command("query", cmd_query, "Query a data source")
    sub.add_argument("data_source", help="Data source ID")
    add_option(
        sub, "--filter", action="append", default=[], metavar="KEY<OP>VALUE",
        help="Filter, repeatable for AND. Operators: =, !=, >, <, >=, <=",
    )
    add_option(sub, "--sort", metavar="KEY:DIR", help="Sort by property (e.g. Due:desc)")
    add_option(sub, "--limit", type=_non_negative_int, help="Max results (default: all)")
    add_option(
        sub, "--output", choices=OUTPUT_FORMATS,
        help="Output format (default: table; overrides --json)",
    )

    sub = add_command("get", cmd_get, "Show a page's properties")
    sub.add_argument("page_id")

    sub = add_command(
        "add", cmd_add, "Add a page to a data source (e.g. --name 'Ship it' --status Done)",
        dynamic_props=True,
    )
    sub.add_argument("data_source", help="Data source ID")
    prop_option(sub)
    add_option(sub, "--from", dest="from_file", metavar="FILE", help="Markdown file for the page body")

    sub = add_command("update", cmd_update, "Update a page's properties", dynamic_props=True)
    sub.add_argument("page_id")
    prop_option(sub)

    sub = add_command("delete", cmd_delete, "Archive a page")
    sub.add_argument("page_id")

    sub = add_command("blocks", cmd_blocks, "Print a page's content as markdown")
    sub.add_argument("page_id")
    add_option(sub, "--limit", type=_non_negative_int, help="Max blocks (default: all)")

    sub = add_command("append", cmd_append, "Append markdown to a page")
    sub.add_argument("page_id")
    sub.add_argument("text", nargs="?", help="Markdown text")
    add_option(sub, "--from", dest="from_file", metavar="FILE", help="Read markdown from a file")

    sub = add_command("block-edit", cmd_block_edit, "Replace a block's text content")
    sub.add_argument("block_id")
    sub.add_argument("text", help="New text (inline markdown allowed)")

    sub = add_command("block-delete", cmd_block_delete, "Delete a block from a page")
    sub.add_argument("block_id")

    sub = add_command("search", cmd_search, "Search pages and data sources")
    sub.add_argument("query")
    add_option(sub, "--limit", type=_non_negative_int, help="Max results (default: all)")

    add_command("users", cmd_users, "List workspace users")

    sub = add_command("user", cmd_user, "Show a user's details")
    sub.add_argument("user_id")

    add_command("me", cmd_me, "Show the integration's bot user")

    sub = add_command("comments", cmd_comments, "List comments on a page")
    sub.add_argument("page_id")

    sub = add_command("comment", cmd_comment, "Add a comment to a page")
    sub.add_argument("page_id")
    sub.add_argument("text")

    return parser


async def run_command(args: argparse.Namespace, extras: list[str], token: str) -> str:
    async with create_notion_client(token) as client:
        return await args.handler(client, args, extras)


def _print_api_error(command: str, err: NotionAPIError) -> None:
    details = get_api_error_details(err) or {}
    print(f"{command} failed: Notion API error", file=sys.stderr)
    if details.get("status") is not None:
        print(f"Status: {details['status']}", file=sys.stderr)
    if details.get("code"):
        print(f"Code: {details['code']}", file=sys.stderr)
    if details.get("message"):
        print(f"Message: {details['message']}", file=sys.stderr)
    body = details.get("body")
    if body:
        body_text = body if isinstance(body, str) else json.dumps(body, indent=2)
        print(f"Body: {body_text}", file=sys.stderr)


def main(argv: Optional[list[str]] = None) -> None:
    """Run the Notion CLI.

    Usage:
        notion query <data-source-id> --filter "Status=Active" --limit 10
        notion add <data-source-id> --name "Ship it" --due-date 2026-01-31
        notion blocks <page-id>
    """
    parser = _build_parser()
    args, extras = parser.parse_known_args(argv)
    if extras and not args.dynamic_props:
        parser.error(f"unrecognized arguments: {' '.join(extras)}")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        token = _load_token(args.token_file)
        output = asyncio.run(run_command(args, extras, token))
    except CommandError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    except NotionAPIError as e:
        _print_api_error(args.command.capitalize(), e)
        raise SystemExit(1)

    print(output)


if __name__ == "__main__":
    main()
