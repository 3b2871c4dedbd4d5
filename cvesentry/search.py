"""Client for the code-hosting search source (GitHub REST API).

Three questions are asked of it:

- which repositories or files mention a vulnerability identifier
  (proof-of-concept candidates),
- which repositories carry a dependency manifest naming a product
  (affected-project candidates),
- what a given manifest file contains.

Rate-limit responses become ``SearchSourceRateLimited`` and outages
become ``SearchSourceUnavailable``; the Evidence Matcher turns either into
"skip this vulnerability until next cycle".
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import __version__
from .config import SearchConfig
from .errors import SearchSourceError, SearchSourceRateLimited, SearchSourceUnavailable
from .manifests import MANIFEST_FILENAMES
from .models import POC_KINDS
from .utils import log_event, parse_timestamp

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PocCandidate:
    """A proof-of-concept candidate.

    ``kind`` is ``repo`` for a whole repository or ``file`` for a single
    file inside one; ``file`` candidates always carry ``path``.
    """

    url: str
    kind: str
    repo_full_name: str
    stars: int = 0
    last_commit_at: dt.datetime | None = None
    path: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in POC_KINDS:
            raise ValueError(f"unknown PoC kind: {self.kind!r}")
        if self.kind == "file" and not self.path:
            raise ValueError("file PoC candidates need a path")


@dataclass(frozen=True)
class ProjectCandidate:
    """A repository holding a manifest that mentions a product."""

    repo_full_name: str
    html_url: str
    path: str
    language: str | None = None


class SearchClient:
    """Async GitHub search client.

    Args:
        config: Search settings (API root, token, limits).
        session: Optional ``aiohttp.ClientSession``; created lazily if
            omitted.
        sleep: Coroutine used between retries.
    """

    def __init__(
        self,
        config: SearchConfig,
        session: aiohttp.ClientSession | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def __aenter__(self) -> SearchClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {
            "User-Agent": f"cvesentry/{__version__}",
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds, connect=15)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    # ─── HTTP ────────────────────────────────────────────────────────────────

    async def _request(
        self,
        path: str,
        params: dict[str, str] | None = None,
        accept: str = "application/vnd.github+json",
        raw: bool = False,
    ) -> Any:
        """GET ``path`` and return parsed JSON (or text when ``raw``).

        Returns ``None`` on 404.
        """
        url = f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"
        session = self._get_session()
        try:
            async with session.get(url, params=params, headers=self._headers(accept)) as resp:
                status = resp.status
                if status == 404:
                    return None
                if status == 429 or (status == 403 and _looks_rate_limited(resp.headers)):
                    reset = resp.headers.get("X-RateLimit-Reset")
                    raise SearchSourceRateLimited(
                        f"search source rate limited (HTTP {status})",
                        reset_at=float(reset) if reset and reset.isdigit() else None,
                    )
                if status >= 500:
                    raise SearchSourceUnavailable(f"search source returned HTTP {status}", status_code=status)
                if status >= 400:
                    raise SearchSourceError(f"search source rejected {path} (HTTP {status})", status_code=status)
                if raw:
                    return await resp.text()
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SearchSourceUnavailable(f"search source unreachable: {exc}") from exc

    async def _get(self, path: str, **kwargs: Any) -> Any:
        result: Any = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(SearchSourceUnavailable),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                result = await self._request(path, **kwargs)
        return result

    # ─── Queries ─────────────────────────────────────────────────────────────

    async def search_pocs(self, cve_id: str) -> list[PocCandidate]:
        """Find repositories and files that mention ``cve_id``.

        Args:
            cve_id: Vulnerability identifier, e.g. ``CVE-2024-0001``.

        Returns:
            Unranked candidates, repositories first.
        """
        limit = str(max(self.config.max_poc_results, 1))
        candidates: list[PocCandidate] = []
        seen: set[str] = set()

        repos = await self._get(
            "/search/repositories",
            params={"q": f"{cve_id} in:name,description,readme", "sort": "stars", "order": "desc", "per_page": limit},
        )
        for item in (repos or {}).get("items") or []:
            url = item.get("html_url")
            if not url or url in seen:
                continue
            seen.add(url)
            candidates.append(
                PocCandidate(
                    url=url,
                    kind="repo",
                    repo_full_name=item.get("full_name") or "",
                    stars=int(item.get("stargazers_count") or 0),
                    last_commit_at=parse_timestamp(item.get("pushed_at")),
                )
            )

        if self.config.token:
            # Code search is only available to authenticated callers.
            files = await self._get("/search/code", params={"q": f'"{cve_id}"', "per_page": limit})
            for item in (files or {}).get("items") or []:
                url = item.get("html_url")
                path = item.get("path")
                if not url or not path or url in seen:
                    continue
                seen.add(url)
                repo = item.get("repository") or {}
                candidates.append(
                    PocCandidate(
                        url=url,
                        kind="file",
                        repo_full_name=repo.get("full_name") or "",
                        stars=int(repo.get("stargazers_count") or 0),
                        last_commit_at=parse_timestamp(repo.get("pushed_at")),
                        path=path,
                    )
                )
        log_event(log, logging.DEBUG, "poc_candidates", cve_id=cve_id, count=len(candidates))
        return candidates

    async def search_dependents(self, vendor: str, product: str) -> list[ProjectCandidate]:
        """Find repositories whose dependency manifests name ``product``.

        One code search per manifest file name, stopping once
        ``max_project_candidates`` distinct repositories were found.
        """
        if not self.config.token or self.config.max_project_candidates <= 0:
            return []
        out: list[ProjectCandidate] = []
        seen: set[str] = set()
        for filename in MANIFEST_FILENAMES:
            remaining = self.config.max_project_candidates - len(out)
            if remaining <= 0:
                break
            data = await self._get(
                "/search/code",
                params={"q": f'"{product}" filename:{filename}', "per_page": str(min(remaining, 100))},
            )
            for item in (data or {}).get("items") or []:
                repo = item.get("repository") or {}
                full_name = repo.get("full_name")
                path = item.get("path") or ""
                if not full_name or full_name in seen or path.rsplit("/", 1)[-1] != filename:
                    continue
                seen.add(full_name)
                out.append(
                    ProjectCandidate(
                        repo_full_name=full_name,
                        html_url=repo.get("html_url") or f"https://github.com/{full_name}",
                        path=path,
                        language=repo.get("language"),
                    )
                )
        log_event(log, logging.DEBUG, "project_candidates", vendor=vendor, product=product, count=len(out))
        return out

    async def fetch_file(self, repo_full_name: str, path: str) -> str | None:
        """Fetch the raw text of one file, or ``None`` if it is gone."""
        return await self._get(
            f"/repos/{repo_full_name}/contents/{path.lstrip('/')}",
            accept="application/vnd.github.raw+json",
            raw=True,
        )

    async def fetch_language(self, repo_full_name: str) -> str | None:
        data = await self._get(f"/repos/{repo_full_name}")
        return (data or {}).get("language")


def _looks_rate_limited(headers: Any) -> bool:
    if headers.get("X-RateLimit-Remaining") == "0":
        return True
    return headers.get("Retry-After") is not None
