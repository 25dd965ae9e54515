"""
BigQuery source over the REST ``jobs.query`` API.

This module provides resilient warehouse fetches with:
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent hammering an unhealthy warehouse
- Rate limiting protection (honours Retry-After)
- Polling of jobs that do not finish within the initial request
- Page following when a batch spans several result pages
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import logging

from refresh.base import SourceBatch, WarehouseSource
from refresh.sources.auth import ServiceAccountTokenProvider, StaticTokenProvider, TokenProvider
from refresh.tables import TableSpec, build_batch_query
from core.exceptions import (
    SourceAuthError,
    SourceError,
    SourceQueryError,
    SourceRateLimitError,
    SourceTransientError,
)

logger = logging.getLogger(__name__)

_INTEGER_TYPES = {"INTEGER", "INT64"}
_FLOAT_TYPES = {"FLOAT", "FLOAT64", "NUMERIC", "BIGNUMERIC"}
_BOOLEAN_TYPES = {"BOOLEAN", "BOOL"}


def _convert_value(value: Any, field_type: str) -> Any:
    if value is None:
        return None
    field_type = (field_type or "STRING").upper()
    try:
        if field_type in _INTEGER_TYPES:
            return int(value)
        if field_type in _FLOAT_TYPES:
            return float(value)
    except (TypeError, ValueError):
        return value
    if field_type in _BOOLEAN_TYPES:
        return str(value).lower() == "true"
    return value


def rows_from_response(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Map BigQuery's ``{"f": [{"v": ...}]}`` rows onto field names."""
    fields = payload.get("schema", {}).get("fields", [])
    rows = []
    for raw in payload.get("rows", []) or []:
        cells = raw.get("f", [])
        rows.append({
            f["name"]: _convert_value(cell.get("v"), f.get("type"))
            for f, cell in zip(fields, cells)
        })
    return rows


class BigQueryRestSource(WarehouseSource):
    """
    Fetch bounded, ordered batches from BigQuery.
    
    The HTTP client is created by the caller and passed in, so one
    connection pool serves the whole process and tests can swap in an
    ``httpx.MockTransport``.
    
    Attributes:
        max_retries: Maximum number of attempts per HTTP call (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 60.0)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """
    
    def __init__(
        self,
        client: httpx.AsyncClient,
        project_id: str,
        dataset: str,
        source_table: str,
        access_token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        api_url: str = "https://bigquery.googleapis.com/bigquery/v2",
        location: str = "US",
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 60.0,
        max_polls: int = 30,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.client = client
        self.project_id = project_id
        self.dataset = dataset
        self.source_table = source_table
        self.token_provider = token_provider or StaticTokenProvider(access_token)
        self.api_url = api_url.rstrip("/")
        self.location = location
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.max_polls = max_polls
        self._sleep = sleep or asyncio.sleep
        
        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds
    
    @classmethod
    def from_settings(cls, settings, client: httpx.AsyncClient) -> "BigQueryRestSource":
        """Service-account credentials win over a static token when both are set."""
        project_id = settings.WAREHOUSE_PROJECT_ID
        if settings.GOOGLE_APPLICATION_CREDENTIALS_JSON:
            provider = ServiceAccountTokenProvider.from_json(settings.GOOGLE_APPLICATION_CREDENTIALS_JSON)
            project_id = project_id or provider.project_id
        else:
            provider = StaticTokenProvider(settings.WAREHOUSE_ACCESS_TOKEN)
        return cls(
            client=client,
            project_id=project_id,
            dataset=settings.WAREHOUSE_DATASET,
            source_table=settings.WAREHOUSE_SOURCE_TABLE,
            token_provider=provider,
            api_url=settings.WAREHOUSE_API_URL,
            location=settings.WAREHOUSE_LOCATION,
            max_retries=settings.MAX_RETRIES,
            retry_delay=settings.RETRY_DELAY_SECONDS,
            timeout=settings.WAREHOUSE_TIMEOUT_SECONDS,
        )
    
    @property
    def qualified_table(self) -> str:
        return f"{self.project_id}.{self.dataset}.{self.source_table}"
    
    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    
    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False
        
        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info("Warehouse circuit breaker reset")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False
        
        return True
    
    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1
        
        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Warehouse circuit breaker opened. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )
    
    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None
    
    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    
    async def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = await self.token_provider.token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers
    
    async def _request_with_retry(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Make an HTTP call with retry logic and exponential backoff.
        
        Raises:
            SourceAuthError: 401/403 (a 401 first renews the token once, when it can)
            SourceQueryError: other 4xx (bad query, missing table)
            SourceRateLimitError: 429 after retries
            SourceTransientError: 5xx, timeouts or connection errors after retries
        """
        if self._is_circuit_open():
            raise SourceTransientError(
                "Warehouse circuit breaker is open",
                context={
                    "url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )
        
        last_exception: Optional[SourceError] = None
        token_renewed = False
        
        for attempt in range(self.max_retries):
            delay = self.retry_delay * (2 ** attempt)
            try:
                logger.debug(f"Warehouse request attempt {attempt + 1}/{self.max_retries}: {method} {url}")
                response = await self.client.request(
                    method,
                    url,
                    headers=await self._headers(),
                    json=json,
                    params=params,
                    timeout=self.timeout
                )
            except httpx.TimeoutException as e:
                last_exception = SourceTransientError(
                    "Warehouse request timed out",
                    context={"url": url, "attempt": attempt + 1},
                    original_exception=e
                )
            except httpx.TransportError as e:
                last_exception = SourceTransientError(
                    "Warehouse connection failed",
                    context={"url": url, "attempt": attempt + 1},
                    original_exception=e
                )
            else:
                status = response.status_code
                
                if status == 401 and not token_renewed and await self.token_provider.force_refresh():
                    token_renewed = True
                    last_exception = SourceAuthError(
                        "Warehouse authentication failed",
                        context={"status_code": status, "url": url}
                    )
                    logger.warning("Warehouse rejected the access token; retrying with a new one")
                    continue
                
                if status in (401, 403):
                    self._record_failure()
                    raise SourceAuthError(
                        "Warehouse authentication failed",
                        context={"status_code": status, "url": url}
                    )
                
                if status == 429:
                    retry_after = response.headers.get("Retry-After")
                    delay = float(retry_after) if retry_after and retry_after.isdigit() else delay
                    last_exception = SourceRateLimitError(
                        "Warehouse rate limit exceeded",
                        context={"status_code": 429, "url": url},
                        retry_after=int(delay)
                    )
                elif status >= 500:
                    last_exception = SourceTransientError(
                        f"Warehouse returned {status}",
                        context={"status_code": status, "url": url, "response_body": response.text[:500]}
                    )
                elif status >= 400:
                    self._record_failure()
                    raise SourceQueryError(
                        f"Warehouse rejected the request ({status})",
                        context={"status_code": status, "url": url, "response_body": response.text[:500]}
                    )
                else:
                    self._record_success()
                    return response.json()
            
            if attempt < self.max_retries - 1:
                logger.warning(f"{last_exception.message}; retrying in {delay}s")
                await self._sleep(delay)
        
        self._record_failure()
        raise last_exception
    
    # ------------------------------------------------------------------
    # WarehouseSource
    # ------------------------------------------------------------------
    
    async def fetch_batch(
        self,
        spec: TableSpec,
        offset: int,
        limit: int,
        since: Optional[date] = None
    ) -> SourceBatch:
        sql, params = build_batch_query(spec, self.qualified_table, limit, offset, since)
        body: Dict[str, Any] = {
            "query": sql,
            "useLegacySql": False,
            "location": self.location,
            "maxResults": limit,
            "timeoutMs": int(self.timeout * 1000),
        }
        if params:
            body["parameterMode"] = "NAMED"
            body["queryParameters"] = [
                {
                    "name": name,
                    "parameterType": {"type": "DATE" if isinstance(value, date) else "STRING"},
                    "parameterValue": {"value": value.isoformat() if isinstance(value, date) else str(value)},
                }
                for name, value in params.items()
            ]
        
        logger.info(f"Fetching {spec.table_name} batch: offset={offset} limit={limit}")
        payload = await self._request_with_retry(
            "POST", f"{self.api_url}/projects/{self.project_id}/queries", json=body
        )
        job_id = payload.get("jobReference", {}).get("jobId")
        
        polls = 0
        while not payload.get("jobComplete", False):
            polls += 1
            if polls > self.max_polls or not job_id:
                raise SourceTransientError(
                    "Warehouse job did not complete in time",
                    context={"job_id": job_id, "polls": polls, "table_name": spec.table_name}
                )
            payload = await self._get_results(job_id, limit)
        
        if payload.get("errors"):
            raise SourceQueryError(
                "Warehouse job finished with errors",
                context={"job_id": job_id, "errors": payload["errors"][:3]}
            )
        
        rows = rows_from_response(payload)
        page_token = payload.get("pageToken")
        while page_token and len(rows) < limit:
            page = await self._get_results(job_id, limit - len(rows), page_token)
            rows.extend(rows_from_response(page))
            page_token = page.get("pageToken")
        
        logger.info(f"Fetched {len(rows)} rows for {spec.table_name} (job {job_id})")
        return SourceBatch(rows=rows[:limit], job_id=job_id)
    
    async def _get_results(
        self,
        job_id: str,
        max_results: int,
        page_token: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "location": self.location,
            "maxResults": max_results,
            "timeoutMs": int(self.timeout * 1000),
        }
        if page_token:
            params["pageToken"] = page_token
        return await self._request_with_retry(
            "GET",
            f"{self.api_url}/projects/{self.project_id}/queries/{job_id}",
            params=params
        )
