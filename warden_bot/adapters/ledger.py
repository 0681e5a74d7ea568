from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import NetworkError

logger = structlog.get_logger(__name__)

CODE_OK = 0
CODE_DUPLICATE = 40001
CODE_INSUFFICIENT = 40002


class LedgerOperation(str, Enum):
    ADD = "add"
    DEDUCT = "deduct"
    TRANSFER = "transfer"
    RANDOM_ADD = "randomAdd"


@dataclass(slots=True)
class RankEntry:
    name: str
    score: int


@dataclass(slots=True)
class LedgerResult:
    code: int
    message: str = ""
    score: Optional[int] = None
    rank: Optional[int] = None
    ranking: list[RankEntry] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    @property
    def duplicate(self) -> bool:
        return self.code == CODE_DUPLICATE

    @property
    def insufficient(self) -> bool:
        return self.code == CODE_INSUFFICIENT


class LedgerClient:
    """Client for the remote points ledger.

    Only connection failures are retried: at that point the request has not
    reached the ledger, so a retry cannot credit twice.
    """

    def __init__(
        self,
        base_url: str,
        *,
        modify_path: str = "points/modify",
        query_path: str = "points/query",
        rank_path: str = "points/ranking",
        timeout: float = 10.0,
        connect_attempts: int = 2,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._modify_path = "/" + modify_path.lstrip("/")
        self._query_path = "/" + query_path.lstrip("/")
        self._rank_path = "/" + rank_path.lstrip("/")
        self._connect_attempts = connect_attempts
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)
        self._owns_client = client is None

    async def modify(
        self,
        operation: LedgerOperation,
        user_id: str,
        name: str,
        amount: int,
        *,
        target: Optional[str] = None,
        target_name: Optional[str] = None,
    ) -> LedgerResult:
        payload: dict[str, Any] = {
            "userId": user_id,
            "name": name,
            "operation": operation.value,
            "amount": amount,
        }
        if target is not None:
            payload["target"] = target
        if target_name is not None:
            payload["targetName"] = target_name
        data = await self._request("POST", self._modify_path, json=payload)
        return _parse_result(data)

    async def query(self, user_id: str) -> LedgerResult:
        data = await self._request("GET", self._query_path, params={"userId": user_id})
        return _parse_result(data)

    async def ranking(self) -> LedgerResult:
        data = await self._request("GET", self._rank_path)
        result = LedgerResult(code=_code(data), message=str(data.get("message", "")))
        body = data.get("data") or {}
        for item in body.get("rank") or []:
            result.ranking.append(RankEntry(name=str(item.get("name", "")), score=_as_int(item.get("score")) or 0))
        return result

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        retry = AsyncRetrying(
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2.0),
            stop=stop_after_attempt(self._connect_attempts),
            retry=retry_if_exception_type(httpx.ConnectError),
            reraise=True,
        )
        try:
            async for attempt in retry:
                with attempt:
                    logger.debug(
                        "ledger_request",
                        method=method,
                        path=path,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    response = await self._client.request(method, path, **kwargs)
        except (httpx.HTTPError, RetryError) as exc:
            logger.warning("ledger_request_failed", method=method, path=path, error=str(exc))
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "ledger_http_error",
                path=path,
                status=response.status_code,
                body=response.text[:500],
            )
            raise NetworkError(f"{method} {path} returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("ledger_invalid_body", path=path, body=response.text[:500])
            raise NetworkError(f"{method} {path} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise NetworkError(f"{method} {path} returned an unexpected payload")
        logger.debug("ledger_response", path=path, code=data.get("code"))
        return data

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _parse_result(data: dict[str, Any]) -> LedgerResult:
    body = data.get("data") or {}
    return LedgerResult(
        code=_code(data),
        message=str(data.get("message", "")),
        score=_as_int(body.get("score")),
        rank=_as_int(body.get("rank")),
    )


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _code(data: dict[str, Any]) -> int:
    code = _as_int(data.get("code"))
    return -1 if code is None else code
