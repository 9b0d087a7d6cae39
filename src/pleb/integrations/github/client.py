"""GitHub REST client for the few issue endpoints the daemon needs."""

from typing import Any, List, Optional
from urllib.parse import quote

import httpx

from ...core.errors import FailureKind, StateStoreError
from ...core.jobs import Job

DEFAULT_API_URL = "https://api.github.com"
_PER_PAGE = 100


class GitHubClient:
    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "pleb",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method, path, params=params, json=json
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            kind = FailureKind.FATAL if status == 401 else FailureKind.TRANSIENT
            raise StateStoreError(
                f"GitHub API {method} {path} failed: {status} {_error_message(exc.response)}",
                kind=kind,
                status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise StateStoreError(
                f"GitHub API {method} {path} failed: {exc}"
            ) from exc
        if response.content:
            return response.json()
        return None

    async def verify_connection(self) -> None:
        await self._request("GET", self._repo_path)

    async def get_authenticated_user(self) -> str:
        data = await self._request("GET", "/user")
        login = (data or {}).get("login") if isinstance(data, dict) else None
        if not login:
            raise StateStoreError("GitHub API returned no login for the token user")
        return str(login)

    async def get_issue(self, number: int) -> Job:
        data = await self._request("GET", f"{self._repo_path}/issues/{number}")
        return Job.from_issue_payload(data)

    async def list_issues_with_label(self, label: str) -> List[Job]:
        jobs: List[Job] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                f"{self._repo_path}/issues",
                params={
                    "labels": label,
                    "state": "open",
                    "per_page": _PER_PAGE,
                    "page": page,
                },
            )
            items = data if isinstance(data, list) else []
            for item in items:
                if "pull_request" in item:
                    continue
                jobs.append(Job.from_issue_payload(item))
            if len(items) < _PER_PAGE:
                return jobs
            page += 1

    async def add_label(self, number: int, label: str) -> None:
        await self._request(
            "POST",
            f"{self._repo_path}/issues/{number}/labels",
            json={"labels": [label]},
        )

    async def remove_label(self, number: int, label: str) -> None:
        """Remove ``label``; a label that is already absent is not an error."""
        try:
            await self._request(
                "DELETE",
                f"{self._repo_path}/issues/{number}/labels/{quote(label, safe='')}",
            )
        except StateStoreError as exc:
            if exc.status_code != 404:
                raise


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text[:200]
