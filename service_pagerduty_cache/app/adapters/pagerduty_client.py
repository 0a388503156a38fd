"""
PagerDuty REST API client.
"""

import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import UpstreamError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

from ..pagination import DEFAULT_PAGE_LIMIT, Page, list_all


ACCEPT_HEADER = "application/vnd.pagerduty+json;version=2"

USER_INCLUDES = ("contact_methods", "notification_rules")


class RetryableUpstreamError(UpstreamError):
    """Throttling and server-side failures worth another attempt."""

    def __init__(self, *args, retry_after: Optional[float] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.retry_after = retry_after


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Seconds from a numeric Retry-After header, if any."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class PagerDutyClient:
    """Client for the subset of the PagerDuty API mirrored by the cache."""

    def __init__(
        self,
        api_url: str,
        token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        metrics=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = api_url.rstrip('/')
        self.page_limit = page_limit
        self.metrics = metrics
        self.logger = get_logger("pagerduty_cache.client")

        headers = {"Accept": ACCEPT_HEADER, "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Token token={token}"

        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="pagerduty_api",
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "PagerDutyClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # Transport

    @retry_on_exception((httpx.TransportError, RetryableUpstreamError), config=RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0))
    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Any] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        start = time.perf_counter()
        response = await self._http.request(method, path, params=params, json=payload)
        self._record_request(method, response.status_code, time.perf_counter() - start)

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableUpstreamError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                details={"body": response.text},
                retry_after=_retry_after(response),
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Any] = None,
        payload: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Execute a request with circuit breaker + error mapping."""
        try:
            response = await self.circuit_breaker.call(self._send, method, path, params, payload)
        except RetryError as exc:
            last = exc.last_exception
            if isinstance(last, UpstreamError):
                raise last
            self.logger.error("PagerDuty API unreachable", method=method, path=path, error=str(last))
            raise UpstreamError(str(last), details={"method": method, "path": path}) from last
        except CircuitBreakerOpenException as exc:
            raise UpstreamError(str(exc), details={"method": method, "path": path}) from exc

        if response.status_code == 404 and allow_not_found:
            self.logger.info("PagerDuty record not found", method=method, path=path)
            return None

        if response.status_code >= 400:
            self.logger.error(
                "PagerDuty request failed",
                method=method,
                path=path,
                status_code=response.status_code,
                response=response.text,
            )
            raise UpstreamError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                details={"body": response.text},
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _record_request(self, method: str, status_code: int, duration: float) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("upstream_requests_total", method=method, status_code=str(status_code))
        self.metrics.observe_histogram("upstream_request_duration_seconds", duration, method=method)

    async def _get_page(
        self,
        path: str,
        key: str,
        offset: int,
        limit: int,
        extra_params: Optional[List[tuple]] = None,
    ) -> Page[Dict[str, Any]]:
        params: List[tuple] = [("offset", offset), ("limit", limit), ("total", "true")]
        if extra_params:
            params.extend(extra_params)
        body = await self._request("GET", path, params=params) or {}
        return Page(
            records=list(body.get(key) or []),
            more=bool(body.get("more")),
            total=body.get("total"),
            offset=body.get("offset"),
            limit=body.get("limit"),
        )

    # Users

    async def list_users_page(
        self, offset: int, limit: int, include: Sequence[str] = ()
    ) -> Page[Dict[str, Any]]:
        """Fetch one page of users, optionally with related sub-resources inline."""
        extra = [("include[]", name) for name in include]
        return await self._get_page("/users", "users", offset, limit, extra)

    async def list_users(self, include: Sequence[str] = USER_INCLUDES) -> List[Dict[str, Any]]:
        """Fetch every user."""
        async def fetch(offset: int, limit: int) -> Page[Dict[str, Any]]:
            return await self.list_users_page(offset, limit, include)

        return await list_all(fetch, limit=self.page_limit)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        body = await self._request("GET", f"/users/{user_id}", allow_not_found=True)
        return body.get("user") if body else None

    async def create_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("POST", "/users", payload={"user": user})
        return body["user"]

    async def update_user(self, user_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("PUT", f"/users/{user_id}", payload={"user": user})
        return body["user"]

    async def delete_user(self, user_id: str) -> None:
        await self._request("DELETE", f"/users/{user_id}")

    # Contact methods

    async def get_contact_method(self, user_id: str, contact_method_id: str) -> Optional[Dict[str, Any]]:
        body = await self._request(
            "GET", f"/users/{user_id}/contact_methods/{contact_method_id}", allow_not_found=True
        )
        return body.get("contact_method") if body else None

    async def create_contact_method(self, user_id: str, contact_method: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request(
            "POST", f"/users/{user_id}/contact_methods", payload={"contact_method": contact_method}
        )
        return body["contact_method"]

    async def update_contact_method(
        self, user_id: str, contact_method_id: str, contact_method: Dict[str, Any]
    ) -> Dict[str, Any]:
        body = await self._request(
            "PUT",
            f"/users/{user_id}/contact_methods/{contact_method_id}",
            payload={"contact_method": contact_method},
        )
        return body["contact_method"]

    async def delete_contact_method(self, user_id: str, contact_method_id: str) -> None:
        await self._request("DELETE", f"/users/{user_id}/contact_methods/{contact_method_id}")

    # Notification rules

    async def get_notification_rule(self, user_id: str, rule_id: str) -> Optional[Dict[str, Any]]:
        body = await self._request(
            "GET", f"/users/{user_id}/notification_rules/{rule_id}", allow_not_found=True
        )
        return body.get("notification_rule") if body else None

    async def create_notification_rule(self, user_id: str, rule: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request(
            "POST", f"/users/{user_id}/notification_rules", payload={"notification_rule": rule}
        )
        return body["notification_rule"]

    async def update_notification_rule(
        self, user_id: str, rule_id: str, rule: Dict[str, Any]
    ) -> Dict[str, Any]:
        body = await self._request(
            "PUT",
            f"/users/{user_id}/notification_rules/{rule_id}",
            payload={"notification_rule": rule},
        )
        return body["notification_rule"]

    async def delete_notification_rule(self, user_id: str, rule_id: str) -> None:
        await self._request("DELETE", f"/users/{user_id}/notification_rules/{rule_id}")

    # Abilities

    async def list_abilities(self) -> List[str]:
        body = await self._request("GET", "/abilities") or {}
        return list(body.get("abilities") or [])

    # Teams

    async def get_team(self, team_id: str) -> Optional[Dict[str, Any]]:
        body = await self._request("GET", f"/teams/{team_id}", allow_not_found=True)
        return body.get("team") if body else None

    async def update_team(self, team_id: str, team: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("PUT", f"/teams/{team_id}", payload={"team": team})
        return body["team"]

    async def delete_team(self, team_id: str) -> None:
        await self._request("DELETE", f"/teams/{team_id}")

    async def add_user_to_team(self, team_id: str, user_id: str, role: Optional[str] = None) -> None:
        payload = {"role": role} if role else None
        await self._request("PUT", f"/teams/{team_id}/users/{user_id}", payload=payload)

    async def remove_user_from_team(self, team_id: str, user_id: str) -> None:
        await self._request("DELETE", f"/teams/{team_id}/users/{user_id}")

    async def list_team_members_page(
        self, team_id: str, offset: int, limit: int
    ) -> Page[Dict[str, Any]]:
        return await self._get_page(f"/teams/{team_id}/members", "members", offset, limit)

    async def list_team_members(self, team_id: str) -> List[Dict[str, Any]]:
        """Fetch the full membership of a team straight from the API."""
        async def fetch(offset: int, limit: int) -> Page[Dict[str, Any]]:
            return await self.list_team_members_page(team_id, offset, limit)

        return await list_all(fetch, limit=self.page_limit)
