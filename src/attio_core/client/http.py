"""Async HTTP client for the Attio REST API.

One logical call (``AttioClient.request``) is a retry sequence of single
attempts. Each attempt composes the caller's signal with the per-request
timeout, races the httpx call against that effective signal, reports itself
to the hooks, and turns any failure into an ``AttioError`` the retry executor
can classify.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
import dataclasses
import itertools
import logging
import time
from typing import Any

import httpx

from attio_core import pagination
from attio_core.batch import BatchItem, BatchOptions, run_batch
from attio_core.cancellation import AbortSignal, await_with_signal, compose_signal
from attio_core.config import FrozenConfig, resolve_config
from attio_core.exceptions import (
    AttioError,
    ConfigurationError,
    normalize_error,
)
from attio_core.core.types import BatchOutcome
from attio_core.retry import RetryConfig, execute_with_retry, resolve_retry_config
from attio_core.telemetry import TelemetryContext, TelemetryContextProtocol

from .hooks import (
    CORRELATION_ID_HEADER,
    ClientHooks,
    ErrorEvent,
    RequestEvent,
    ResponseEvent,
    call_hook,
    new_correlation_id,
)
from .response import unwrap_items, validate_payload

log = logging.getLogger(__name__)

type RetryOverride = RetryConfig | Mapping[str, Any] | None


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class AttioClient:
    """Async client with retries, timeouts, cancellation, and hooks.

    Args:
        config: A ``FrozenConfig``, a mapping of overrides passed to
            ``resolve_config``, or ``None`` to resolve from the environment.
        transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
        http_client: Optional pre-built ``httpx.AsyncClient``. The client does
            not close an httpx client it did not create.
        hooks: Lifecycle hooks; see ``logging_hooks``.
        retry: Client-level retry overrides, layered over the config's.
        telemetry: Optional telemetry context.
    """

    def __init__(
        self,
        config: FrozenConfig | Mapping[str, Any] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        http_client: httpx.AsyncClient | None = None,
        hooks: ClientHooks | None = None,
        retry: RetryOverride = None,
        telemetry: TelemetryContextProtocol | None = None,
    ):
        if not isinstance(config, FrozenConfig):
            config = resolve_config(config)
        if not config.api_key:
            raise ConfigurationError(
                "Missing Attio API key. Set ATTIO_API_KEY (or ATTIO_ACCESS_TOKEN) "
                "or pass api_key."
            )
        self.config = config
        self.retry = resolve_retry_config(config.retry, retry)
        self.hooks = hooks or ClientHooks()
        self._tele = telemetry or TelemetryContext()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Accept": "application/json",
            },
            transport=transport,
            # Timeouts are enforced per attempt through the effective signal.
            timeout=httpx.Timeout(None),
        )

    def __repr__(self) -> str:
        return f"AttioClient(base_url={self.config.base_url!r})"

    async def __aenter__(self) -> AttioClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    # --- Requests ---

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        signal: AbortSignal | None = None,
        timeout: float | None = None,
        retry: RetryOverride = None,
    ) -> Any:
        """Perform one logical API call and return the decoded JSON body.

        Args:
            method: HTTP method.
            path: Path relative to the base URL, e.g. ``/v2/objects``.
            params: Query parameters.
            json: JSON request body.
            headers: Extra request headers.
            signal: Caller cancellation signal; checked before every attempt
                and raced against every in-flight attempt.
            timeout: Per-attempt timeout in seconds. ``None`` uses the
                configured default; ``0`` disables it.
            retry: Call-site retry overrides. ``{"max_retries": 0}`` disables
                retries for this call.

        Returns:
            The decoded JSON body, the raw text for non-JSON bodies, or
            ``None`` for an empty body.

        Raises:
            AttioError: The normalized failure of the last attempt.
        """
        config = resolve_retry_config(self.retry, retry)
        effective_timeout = self.config.timeout_seconds if timeout is None else timeout
        attempts = itertools.count()

        async def attempt() -> Any:
            return await self._send_once(
                method,
                path,
                params=params,
                json=json,
                headers=headers,
                signal=signal,
                timeout=effective_timeout,
                attempt=next(attempts),
            )

        with self._tele("http.request", method=method, path=path):
            return await execute_with_retry(
                attempt, config, signal=signal, telemetry=self._tele
            )

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None,
        json: Any,
        headers: Mapping[str, str] | None,
        signal: AbortSignal | None,
        timeout: float | None,
        attempt: int,
    ) -> Any:
        request = self._http.build_request(
            method, path, params=params, json=json, headers=headers
        )
        correlation_id = None
        if self.config.correlation_ids:
            correlation_id = (
                request.headers.get(CORRELATION_ID_HEADER) or new_correlation_id()
            )
            request.headers[CORRELATION_ID_HEADER] = correlation_id

        call_hook(self.hooks.on_request, RequestEvent(request, attempt, correlation_id))
        composed = compose_signal(signal, timeout)
        start = time.perf_counter()
        try:
            response = await await_with_signal(self._http.send(request), composed.signal)
        except AttioError as e:
            e.request = e.request or request
            call_hook(
                self.hooks.on_error,
                ErrorEvent(e, attempt, request, correlation_id=correlation_id),
            )
            raise
        except httpx.HTTPError as e:
            error = normalize_error(e, request=request)
            call_hook(
                self.hooks.on_error,
                ErrorEvent(error, attempt, request, correlation_id=correlation_id),
            )
            raise error from e
        finally:
            composed.cleanup()

        elapsed = time.perf_counter() - start
        call_hook(
            self.hooks.on_response,
            ResponseEvent(request, response, attempt, elapsed, correlation_id),
        )
        body = _decode_body(response)

        if response.is_error:
            error = normalize_error(body, response=response, request=request)
            log.debug(
                "%s %s -> %d (attempt %d)",
                method,
                request.url.path,
                response.status_code,
                attempt + 1,
            )
            call_hook(
                self.hooks.on_error,
                ErrorEvent(error, attempt, request, response, correlation_id),
            )
            raise error
        return body

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    # --- Collections ---

    async def fetch_items(
        self, method: str, path: str, *, item_type: Any = None, **kwargs: Any
    ) -> list[Any]:
        """Request a single item collection and validate it against ``item_type``.

        Raises:
            ResponseValidationError: If an item does not match ``item_type``.
        """
        payload = await self.request(method, path, **kwargs)
        items = unwrap_items(payload)
        if item_type is None:
            return items
        return validate_payload(items, list[item_type], what=f"{method} {path} items")

    def _page_fetcher(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None,
        json: Mapping[str, Any] | None,
        signal: AbortSignal | None,
        retry: RetryOverride,
    ) -> Callable[[int, int], Awaitable[Any]]:
        in_body = method.upper() == "POST"

        async def fetch_page(offset: int, limit: int) -> Any:
            window = {"offset": offset, "limit": limit}
            if in_body:
                return await self.request(
                    method,
                    path,
                    params=params,
                    json={**(json or {}), **window},
                    signal=signal,
                    retry=retry,
                )
            return await self.request(
                method,
                path,
                params={**(params or {}), **window},
                json=json,
                signal=signal,
                retry=retry,
            )

        return fetch_page

    def _listing_options(
        self,
        options: pagination.PaginationOptions | None,
        item_type: Any,
        overrides: Mapping[str, Any],
    ) -> pagination.PaginationOptions:
        opts = options or pagination.PaginationOptions()
        if overrides:
            opts = dataclasses.replace(opts, **overrides)
        if opts.limit is None and opts.page_size is None:
            opts = dataclasses.replace(opts, page_size=self.config.page_size)
        if item_type is not None:
            opts = dataclasses.replace(opts, item_type=item_type)
        return opts

    async def paginate(
        self,
        method: str,
        path: str,
        *,
        item_type: Any = None,
        options: pagination.PaginationOptions | None = None,
        params: Mapping[str, Any] | None = None,
        json: Mapping[str, Any] | None = None,
        retry: RetryOverride = None,
        **overrides: Any,
    ) -> list[Any]:
        """Collect an offset-paginated listing eagerly.

        Example:
            records = await client.paginate(
                "POST", "/v2/objects/people/records/query", max_items=500
            )
        """
        opts = self._listing_options(options, item_type, overrides)
        fetch = self._page_fetcher(
            method, path, params=params, json=json, signal=opts.signal, retry=retry
        )
        return await pagination.collect_pages(fetch, opts, telemetry=self._tele)

    def stream(
        self,
        method: str,
        path: str,
        *,
        item_type: Any = None,
        options: pagination.PaginationOptions | None = None,
        params: Mapping[str, Any] | None = None,
        json: Mapping[str, Any] | None = None,
        retry: RetryOverride = None,
        **overrides: Any,
    ) -> AsyncIterator[Any]:
        """Lazily iterate an offset-paginated listing, one page at a time."""
        opts = self._listing_options(options, item_type, overrides)
        fetch = self._page_fetcher(
            method, path, params=params, json=json, signal=opts.signal, retry=retry
        )
        return pagination.iterate_pages(fetch, opts, telemetry=self._tele)

    # --- Batches ---

    async def batch(
        self,
        items: Iterable[BatchItem[Any] | Callable[..., Awaitable[Any]]],
        options: BatchOptions | None = None,
        **overrides: Any,
    ) -> list[BatchOutcome[Any]]:
        """Run ``items`` with the configured default concurrency."""
        return await run_batch(
            items, options or self.config.batch, telemetry=self._tele, **overrides
        )
