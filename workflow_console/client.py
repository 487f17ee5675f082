"""Async client for the remote job API."""

from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

import httpx
from loguru import logger

from .models import ActionMeta, JobPollResponse, StoryCollection
from .settings import API_BASE, REQUEST_TIMEOUT

T = TypeVar("T")


class RequestError(Exception):
    """Raised when the job API answers with a non-success status."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.response_body = body
        super().__init__(body or f"Request failed with status {status}")

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class InvalidResponseError(RequestError):
    """Raised when a success response is not JSON or lacks required fields."""


def _parse_actions(data: Any) -> List[ActionMeta]:
    return [ActionMeta.from_dict(item) for item in data]


class JobApiClient:
    """Thin wrapper over ``httpx.AsyncClient`` for the job endpoints.

    Pass ``http_client`` to reuse an existing client (for example one built on
    ``httpx.ASGITransport``); it is then left open by ``aclose``.
    """

    def __init__(
        self,
        base_url: str = API_BASE,
        *,
        timeout: float = REQUEST_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "JobApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        parse: Callable[[Any], T],
        *,
        params: Any = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> T:
        response = await self._http_client.request(
            method,
            f"{self.base_url}{path}",
            params=params,
            json=json_body,
            headers={"Content-Type": "application/json"},
        )
        if not response.is_success:
            logger.debug(f"{method} {path} returned {response.status_code}")
            raise RequestError(response.status_code, response.text)
        try:
            return parse(response.json())
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.debug(f"{method} {path} returned an unusable body: {exc!r}")
            raise InvalidResponseError(
                response.status_code, f"Invalid response from {path}: {exc!r}"
            ) from exc

    async def list_actions(self) -> List[ActionMeta]:
        return await self._request("GET", "/api/actions", _parse_actions)

    async def create_job(
        self,
        action_id: str,
        *,
        args: Optional[List[str]] = None,
        extra_args: Optional[List[str]] = None,
        story_ids: Optional[List[str]] = None,
    ) -> JobPollResponse:
        payload: Dict[str, Any] = {"actionId": action_id}
        if args is not None:
            payload["args"] = list(args)
        if extra_args is not None:
            payload["extraArgs"] = list(extra_args)
        if story_ids is not None:
            payload["storyIds"] = list(story_ids)
        return await self._request("POST", "/api/jobs", JobPollResponse.from_dict, json_body=payload)

    async def fetch_job(self, job_id: str, cursor: int = 0) -> JobPollResponse:
        return await self._request(
            "GET", f"/api/jobs/{job_id}", JobPollResponse.from_dict, params={"cursor": str(cursor)}
        )

    async def terminate_job(self, job_id: str, cursor: int = 0) -> JobPollResponse:
        return await self._request(
            "POST", f"/api/jobs/{job_id}/terminate", JobPollResponse.from_dict, params={"cursor": str(cursor)}
        )

    async def list_stories(
        self,
        *,
        quick: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> StoryCollection:
        params: List[tuple] = []
        if isinstance(limit, int) and limit > 0:
            params.append(("limit", str(limit)))
        for item in quick or []:
            value = item.strip() if isinstance(item, str) else ""
            if value:
                params.append(("quick", value))
        return await self._request("GET", "/api/stories", StoryCollection.from_dict, params=params or None)
