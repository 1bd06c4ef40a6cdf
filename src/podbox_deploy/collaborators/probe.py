"""
HTTP probing for the health verifier.

HttpProbe.get returns the status code of a single GET request. Redirects
are not followed: the verifier judges the first response it receives.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx

from podbox_deploy.errors import CollaboratorError, CollaboratorTimeoutError


class HttpProbe(ABC):
    """Issues a GET request and reports the status code."""

    @abstractmethod
    async def get(self, url: str) -> int:
        """
        Return the HTTP status code for ``url``.

        Raises:
            CollaboratorError: If no response was received.
        """


class HttpxProbe(HttpProbe):
    """HttpProbe backed by httpx.AsyncClient."""

    def __init__(self, timeout: float = 10.0, verify: bool = True) -> None:
        self.timeout = timeout
        self.verify = verify

    async def get(self, url: str) -> int:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                verify=self.verify,
                follow_redirects=False,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise CollaboratorTimeoutError(
                f"GET {url} timed out after {self.timeout}s",
                details={"url": url, "timeout_seconds": self.timeout},
            ) from exc
        except httpx.HTTPError as exc:
            raise CollaboratorError(
                f"GET {url} failed: {exc}",
                details={"url": url},
            ) from exc

        return response.status_code
