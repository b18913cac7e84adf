"""HTTP client for the spreadsheet values endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Iterable, Mapping, Optional

import aiohttp

from . import constants
from .backoff import FailureKind
from .dataset import Dataset, DatasetError, EMPTY_DATASET, decode_values

LOGGER = logging.getLogger(__name__)


class SourceError(RuntimeError):
    """Raised when the values endpoint cannot deliver a dataset."""

    kind = FailureKind.GENERIC

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class QuotaExceededError(SourceError):
    """Raised when the endpoint signals that the request quota is exhausted."""

    kind = FailureKind.QUOTA_EXCEEDED


class SourceParseError(SourceError):
    """Raised when the response body is not a usable values matrix."""

    kind = FailureKind.PARSE


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised while fetching to a :class:`FailureKind`."""
    if isinstance(exc, SourceError):
        return exc.kind
    if isinstance(exc, DatasetError):
        return FailureKind.PARSE
    return FailureKind.GENERIC


def _is_quota_signal(status: int, body: Any) -> bool:
    if status == constants.QUOTA_HTTP_STATUS:
        return True
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping):
            return error.get("status") in constants.QUOTA_ERROR_STATUSES
    return False


def _error_message(status: int, body: Any) -> str:
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
    return f"Sheet fetch failed with status {status}"


class SheetSource:
    """Fetches one values range and decodes it into a :class:`Dataset`.

    The session is created lazily unless one is injected; an injected session
    is never closed by this class.
    """

    def __init__(
        self,
        url: str,
        *,
        required_fields: Iterable[str] = (),
        timeout: float = constants.DEFAULT_FETCH_TIMEOUT_SECONDS,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        if not url:
            raise ValueError("SheetSource requires a URL")
        self.url = url
        self.required_fields = tuple(required_fields)
        self.timeout = timeout
        self._params = {"key": api_key} if api_key else None
        self._session = session
        self._owns_session = session is None

    async def fetch(self) -> Dataset:
        """Fetch and decode the current values.

        Raises:
            QuotaExceededError: On HTTP 429 or an equivalent quota error body
            SourceParseError: If the body is malformed or the header mismatches
            SourceError: On any other non-success response
            asyncio.TimeoutError: If the request exceeds ``timeout``
            aiohttp.ClientError: If the transport fails
        """
        session = await self._ensure_session()

        try:
            async with asyncio.timeout(self.timeout):
                async with session.get(self.url, params=self._params) as response:
                    status = response.status
                    body = await self._read_json(response)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Sheet fetch timed out after %.1fs (url=%s)", self.timeout, self.url
            )
            raise

        if status >= 400:
            message = _error_message(status, body)
            if _is_quota_signal(status, body):
                raise QuotaExceededError(message, status=status)
            raise SourceError(message, status=status)

        if body is _UNREADABLE:
            raise SourceParseError("Response body is not valid JSON", status=status)
        return self._decode(body, status)

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            with contextlib.suppress(Exception):
                await self._session.close()
            self._session = None

    def _decode(self, body: Any, status: int) -> Dataset:
        if not isinstance(body, Mapping):
            raise SourceParseError("Response body is not a JSON object", status=status)

        values = body.get("values")
        if values is None:
            LOGGER.warning("Sheet response is missing 'values' (url=%s)", self.url)
            return EMPTY_DATASET

        try:
            return decode_values(values, required_fields=self.required_fields)
        except DatasetError as exc:
            raise SourceParseError(str(exc), status=status) from exc

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse) -> Any:
        try:
            return await response.json(content_type=None)
        except (ValueError, aiohttp.ContentTypeError):
            return _UNREADABLE

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


class _Unreadable:
    def __repr__(self) -> str:
        return "<unreadable body>"


_UNREADABLE: Any = _Unreadable()
