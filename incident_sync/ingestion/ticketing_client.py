"""Client for the upstream ticketing API."""

from datetime import datetime
from typing import Any

import requests
import structlog
from pydantic import BaseModel, Field, ValidationError
from requests.exceptions import ConnectionError, HTTPError, RequestException, Timeout

from incident_sync.exceptions import MalformedRecord, QuotaRejected, TransientFetchFailure
from incident_sync.models.incident import (
    Incident,
    IncidentActivity,
    IncidentDetail,
    IncidentSummary,
)
from incident_sync.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()

_INCIDENT_KEYS = (
    "id",
    "ticket_number",
    "title",
    "severity",
    "state",
    "rule_name",
    "close_code",
    "assignee_name",
    "created_at",
    "escalated_at",
    "acknowledged_at",
    "closed_at",
    "updated_at",
)


class SummaryPage(BaseModel):
    """One page of the "updated since" list query."""

    items: list[IncidentSummary] = Field(default_factory=list)
    next_offset: int | None = Field(default=None, description="Offset of the next page, if any")
    malformed: int = Field(default=0, ge=0, description="Summaries dropped by validation")
    quota_remaining: int | None = Field(default=None, description="Upstream quota hint")


class FetchedDetail(BaseModel):
    """A hydrated incident together with the quota hint of its response."""

    detail: IncidentDetail
    quota_remaining: int | None = None


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, HTTPError):
        return error.response is not None and error.response.status_code >= 500
    return isinstance(error, (ConnectionError, Timeout))


class TicketingClient:
    """Thin wrapper around ``requests.Session`` for the ticketing API.

    Every request carries a timeout. Connection errors, timeouts and 5xx are
    retried with exponential backoff and then surface as
    ``TransientFetchFailure``. HTTP 429 surfaces as ``QuotaRejected``. Other 4xx
    responses and payloads that fail validation surface as ``MalformedRecord``.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        quota_header: str = "X-RateLimit-Remaining",
        retry_base_delay: float = 1.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize the ticketing client.

        Args:
            base_url: API base URL, e.g. https://tickets.example.com/api/v1
            api_token: Opaque bearer token, passed through unchanged
            timeout_seconds: Connect and read timeout applied to every request
            max_retries: Retries for connection errors, timeouts and 5xx
            quota_header: Response header carrying the remaining-quota hint
            retry_base_delay: First backoff delay in seconds
            session: Optional pre-configured session (tests pass a mock)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._quota_header = quota_header
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {api_token}", "Accept": "application/json"}
        )
        self._get_with_retry = exponential_backoff_retry(
            max_retries=max_retries,
            base_delay=retry_base_delay,
            max_delay=30.0,
            exceptions=(RequestException,),
            should_retry=_is_retryable,
        )(self._get_once)
        log.info(
            "ticketing_client_initialized",
            base_url=self._base_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
        )

    def list_incident_summaries(
        self, updated_since: datetime | None, offset: int = 0, limit: int = 100
    ) -> SummaryPage:
        """
        Fetch one page of summaries updated after ``updated_since``, oldest first.

        Summaries that fail validation are dropped and counted in ``malformed``.

        Raises:
            QuotaRejected: Upstream rejected the page (HTTP 429)
            TransientFetchFailure: Network, timeout or server error after retries
            MalformedRecord: The page body is not a valid list response
        """
        params: dict[str, Any] = {"offset": offset, "limit": limit, "sort": "updated_at"}
        if updated_since is not None:
            params["updated_since"] = updated_since.isoformat()

        payload, quota_remaining = self._get("/incidents", params)

        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise MalformedRecord("List response is missing the 'items' array")

        items: list[IncidentSummary] = []
        malformed = 0
        for raw in payload["items"]:
            try:
                items.append(IncidentSummary.model_validate(raw))
            except ValidationError as e:
                malformed += 1
                log.warning(
                    "failed_to_convert_summary",
                    incident_id=raw.get("id") if isinstance(raw, dict) else None,
                    error=str(e),
                )

        next_offset = payload.get("next_offset")
        if not isinstance(next_offset, int) or next_offset <= offset:
            next_offset = None

        log.debug(
            "summary_page_fetched",
            offset=offset,
            item_count=len(items),
            malformed=malformed,
            next_offset=next_offset,
            quota_remaining=quota_remaining,
        )
        return SummaryPage(
            items=items,
            next_offset=next_offset,
            malformed=malformed,
            quota_remaining=quota_remaining,
        )

    def get_incident_detail(
        self, incident_id: str, activities_since: datetime | None = None
    ) -> FetchedDetail:
        """
        Fetch the full incident and its activity.

        Args:
            incident_id: Upstream incident identifier
            activities_since: Only return activity after this time; None for full history

        Raises:
            QuotaRejected: Upstream rejected the request (HTTP 429)
            TransientFetchFailure: Network, timeout or server error after retries
            MalformedRecord: Payload failed validation, or upstream answered 4xx (e.g. 404)
        """
        params: dict[str, Any] = {}
        if activities_since is not None:
            params["activities_since"] = activities_since.isoformat()

        payload, quota_remaining = self._get(
            f"/incidents/{incident_id}", params, incident_id=incident_id
        )
        detail = self._convert_to_detail(payload, incident_id)
        log.debug(
            "incident_detail_fetched",
            incident_id=incident_id,
            activity_count=len(detail.activities),
            quota_remaining=quota_remaining,
        )
        return FetchedDetail(detail=detail, quota_remaining=quota_remaining)

    def close(self) -> None:
        self._session.close()

    def _get_once(self, path: str, params: dict[str, Any]) -> requests.Response:
        response = self._session.get(
            f"{self._base_url}{path}", params=params, timeout=self._timeout
        )
        if response.status_code == 429:
            raise QuotaRejected(f"Upstream quota exhausted for {path}")
        response.raise_for_status()
        return response

    def _get(
        self, path: str, params: dict[str, Any], incident_id: str | None = None
    ) -> tuple[Any, int | None]:
        try:
            response = self._get_with_retry(path, params)
        except QuotaRejected as e:
            e.incident_id = incident_id
            raise
        except HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status is not None and 400 <= status < 500:
                raise MalformedRecord(f"HTTP {status} for {path}", incident_id) from e
            raise TransientFetchFailure(f"HTTP {status} for {path}", incident_id) from e
        except RequestException as e:
            raise TransientFetchFailure(f"Request to {path} failed: {e}", incident_id) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedRecord(f"Response for {path} is not JSON", incident_id) from e

        return payload, self._parse_quota_hint(response)

    def _parse_quota_hint(self, response: requests.Response) -> int | None:
        raw = response.headers.get(self._quota_header)
        if raw is None:
            return None
        try:
            return max(int(float(raw)), 0)
        except (TypeError, ValueError):
            log.warning("unparsable_quota_header", header=self._quota_header, value=raw)
            return None

    def _convert_to_detail(self, payload: Any, incident_id: str) -> IncidentDetail:
        """
        Convert an upstream detail response to an ``IncidentDetail``.

        Raises:
            MalformedRecord: If required fields are missing or invalid
        """
        if not isinstance(payload, dict):
            raise MalformedRecord("Detail response is not an object", incident_id)

        if str(payload.get("id")) != incident_id:
            raise MalformedRecord(
                f"Detail response id {payload.get('id')!r} does not match {incident_id!r}",
                incident_id,
            )

        raw_activities = payload.get("activities") or []
        if not isinstance(raw_activities, list):
            raise MalformedRecord("'activities' is not a list", incident_id)

        try:
            incident = Incident(
                **{key: payload.get(key) for key in _INCIDENT_KEYS if payload.get(key) is not None},
                raw_payload=payload,
            )
            activities = [
                IncidentActivity(
                    incident_id=incident_id,
                    activity_type=raw.get("activity_type") or raw.get("type"),
                    old_value=raw.get("old_value"),
                    new_value=raw.get("new_value"),
                    timestamp=raw.get("timestamp"),
                )
                for raw in raw_activities
            ]
        except (ValidationError, AttributeError) as e:
            log.error("malformed_incident_detail", incident_id=incident_id, error=str(e))
            raise MalformedRecord(f"Invalid incident payload: {e}", incident_id) from e

        return IncidentDetail(incident=incident, activities=activities)
