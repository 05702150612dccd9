"""
Rate-Limited Beds24 API Client

Wraps every call to the external reservation API:
- Bearer token auth from TokenManager, plus the organization header
- Credit tracking from X-FiveMinCreditLimit-* / X-DailyCreditLimit-* headers
- A RateLimitSample row and an AuditRecord for every response, success or not
- Structured error mapping (AuthError / RateLimitExceeded / ApiError / TransportError)

Credit state lives in a CreditTracker owned by one client instance, i.e. by
one invocation. It is seeded from the last persisted sample and overwritten
by response headers, which are always authoritative.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.audit import RateLimitSample
from ..models.channel_integration import DEFAULT_PROVIDER
from ..utils.dates import utcnow
from ..utils.errors import ApiError, AuthError, RateLimitExceeded, TransportError
from ..utils.logging_config import get_logger
from .audit_service import AuditLogger, OperationTimer

logger = get_logger(__name__)

HEADER_FIVE_MIN_REMAINING = "X-FiveMinCreditLimit-Remaining"
HEADER_FIVE_MIN_RESETS_IN = "X-FiveMinCreditLimit-ResetsIn"
HEADER_DAILY_REMAINING = "X-DailyCreditLimit-Remaining"
HEADER_REQUEST_COST = "X-RequestCost"


@dataclass
class ApiErrorInfo:
    """Structured error for a status code"""
    code: str
    message: str
    status_code: int
    retryable: bool = False


# Error mapping for Beds24 responses
ERROR_MAP = {
    400: ApiErrorInfo("bad_request", "Invalid request parameters", 400, False),
    401: ApiErrorInfo("unauthorized", "Authorization failed: invalid or expired token", 401, False),
    403: ApiErrorInfo("forbidden", "Authorization failed: token lacks scope for this resource", 403, False),
    404: ApiErrorInfo("not_found", "Resource not found", 404, False),
    429: ApiErrorInfo("rate_limited", "Rate limit exceeded", 429, True),
    500: ApiErrorInfo("server_error", "Beds24 server error", 500, True),
    502: ApiErrorInfo("bad_gateway", "Beds24 gateway error", 502, True),
    503: ApiErrorInfo("service_unavailable", "Beds24 service unavailable", 503, True),
}


@dataclass
class RateLimitHeaders:
    cost: int = 1
    five_min_remaining: Optional[int] = None
    five_min_resets_in: Optional[int] = None
    daily_remaining: Optional[int] = None


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitHeaders:
    """Read credit headers; missing cost defaults to 1"""
    cost = _int_header(headers, HEADER_REQUEST_COST)
    return RateLimitHeaders(
        cost=cost if cost is not None else 1,
        five_min_remaining=_int_header(headers, HEADER_FIVE_MIN_REMAINING),
        five_min_resets_in=_int_header(headers, HEADER_FIVE_MIN_RESETS_IN),
        daily_remaining=_int_header(headers, HEADER_DAILY_REMAINING),
    )


def record_rate_limit_sample(
    db: Session,
    endpoint: str,
    headers: Mapping[str, str],
    parsed: Optional[RateLimitHeaders] = None,
) -> Optional[RateLimitSample]:
    """Persist the credit headers of one response"""
    parsed = parsed or parse_rate_limit_headers(headers)
    interesting = {
        k: v for k, v in headers.items()
        if k.lower().startswith("x-") and ("credit" in k.lower() or "cost" in k.lower())
    }
    try:
        sample = RateLimitSample(
            provider=DEFAULT_PROVIDER,
            endpoint=endpoint[:200],
            cost=parsed.cost,
            five_min_remaining=parsed.five_min_remaining,
            five_min_resets_in=parsed.five_min_resets_in,
            daily_remaining=parsed.daily_remaining,
            response_headers=interesting,
            recorded_at=utcnow(),
        )
        db.add(sample)
        db.commit()
        return sample
    except SQLAlchemyError as e:
        logger.warning(f"Failed to persist rate limit sample for {endpoint}: {e}")
        db.rollback()
        return None


def latest_rate_limit_sample(db: Session) -> Optional[RateLimitSample]:
    return db.query(RateLimitSample).filter(
        RateLimitSample.provider == DEFAULT_PROVIDER
    ).order_by(RateLimitSample.recorded_at.desc()).first()


@dataclass
class CreditTracker:
    """
    Best-effort view of the remaining credit budget for one invocation.

    None means unknown, and unknown never blocks a call.
    """
    five_min_remaining: Optional[int] = None
    five_min_resets_at: Optional[datetime] = None
    daily_remaining: Optional[int] = None
    daily_date: Optional[date] = None
    last_cost: int = 1

    @classmethod
    def from_store(cls, db: Session, now: Optional[datetime] = None) -> "CreditTracker":
        """Seed from the newest RateLimitSample if its window is still open"""
        now = now or utcnow()
        sample = latest_rate_limit_sample(db)
        tracker = cls()
        if not sample:
            return tracker

        if sample.five_min_remaining is not None:
            resets_in = sample.five_min_resets_in if sample.five_min_resets_in is not None else 300
            resets_at = sample.recorded_at + timedelta(seconds=resets_in)
            if resets_at > now:
                tracker.five_min_remaining = sample.five_min_remaining
                tracker.five_min_resets_at = resets_at

        if sample.daily_remaining is not None and sample.recorded_at.date() == now.date():
            tracker.daily_remaining = sample.daily_remaining
            tracker.daily_date = now.date()

        tracker.last_cost = sample.cost or 1
        return tracker

    def is_exhausted(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if self.five_min_remaining is not None and self.five_min_remaining <= 0:
            if self.five_min_resets_at is None or self.five_min_resets_at > now:
                return True
            # Window rolled over; budget is unknown again
            self.five_min_remaining = None
            self.five_min_resets_at = None
        if self.daily_remaining is not None and self.daily_remaining <= 0:
            if self.daily_date is None or self.daily_date == now.date():
                return True
            self.daily_remaining = None
        return False

    def apply_headers(self, parsed: RateLimitHeaders, now: Optional[datetime] = None):
        """Headers replace whatever was estimated locally"""
        now = now or utcnow()
        self.last_cost = parsed.cost
        if parsed.five_min_remaining is not None:
            self.five_min_remaining = parsed.five_min_remaining
            resets_in = parsed.five_min_resets_in if parsed.five_min_resets_in is not None else 300
            self.five_min_resets_at = now + timedelta(seconds=resets_in)
        elif self.five_min_remaining is not None:
            self.five_min_remaining = max(0, self.five_min_remaining - parsed.cost)
        if parsed.daily_remaining is not None:
            self.daily_remaining = parsed.daily_remaining
            self.daily_date = now.date()
        elif self.daily_remaining is not None:
            self.daily_remaining = max(0, self.daily_remaining - parsed.cost)

    def seconds_until_reset(self, now: Optional[datetime] = None) -> Optional[int]:
        if not self.five_min_resets_at:
            return None
        return max(0, int((self.five_min_resets_at - (now or utcnow())).total_seconds()))


@dataclass
class ApiResponse:
    """Successful API response with its credit metadata"""
    status_code: int
    data: Any
    cost: int = 1
    five_min_remaining: Optional[int] = None
    daily_remaining: Optional[int] = None
    duration_ms: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def records(self) -> List[Dict]:
        """The `data` array of a Beds24 envelope, or the body if it is a list"""
        if isinstance(self.data, list):
            return self.data
        if isinstance(self.data, dict):
            items = self.data.get("data")
            if isinstance(items, list):
                return items
        return []


class Beds24Client:
    """
    Client for one sync invocation.

    Use as a context manager, or call close(), so the underlying
    httpx.Client is released.
    """

    def __init__(
        self,
        db: Session,
        token_manager=None,
        tracker: Optional[CreditTracker] = None,
        hotel_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.db = db
        self.hotel_id = hotel_id
        self.trace_id = trace_id
        self.audit = AuditLogger(db)
        self.tracker = tracker if tracker is not None else CreditTracker.from_store(db)

        self._owns_http = http_client is None
        self.http = http_client or httpx.Client(
            base_url=settings.beds24_base_url,
            timeout=settings.beds24_timeout_seconds,
        )

        if token_manager is None:
            from .token_manager import TokenManager
            token_manager = TokenManager(db, http_client=self.http)
        self.token_manager = token_manager

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        if self._owns_http:
            self.http.close()

    def _get_headers(self, token: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": "channelsync/0.1",
        }
        if settings.beds24_organization:
            headers["organization"] = settings.beds24_organization
        if self.trace_id:
            headers["X-Request-ID"] = self.trace_id
        return headers

    def _map_error(self, status_code: int, response_data: Any) -> ApiErrorInfo:
        """Map HTTP status code to structured error"""
        if status_code in ERROR_MAP:
            error = ERROR_MAP[status_code]
            if isinstance(response_data, dict):
                msg = response_data.get("error") or response_data.get("message")
                if isinstance(msg, str) and msg:
                    return ApiErrorInfo(error.code, f"{error.message}: {msg}", status_code, error.retryable)
            return error

        if status_code >= 500:
            return ApiErrorInfo("server_error", f"Server error: {status_code}", status_code, True)

        return ApiErrorInfo("unknown", f"Unknown error: {status_code}", status_code, False)

    @staticmethod
    def _entity_for(endpoint: str) -> str:
        parts = [p for p in endpoint.split("/") if p]
        return parts[0] if parts else "unknown"

    def call(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        token_type: str = "read",
        method: str = "GET",
        payload: Optional[Any] = None,
    ) -> ApiResponse:
        """
        Make one API call.

        Raises RateLimitExceeded without sending anything when the tracked
        budget is already at zero.
        """
        operation = f"{method.upper()} {endpoint}"
        entity_type = self._entity_for(endpoint)
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}

        if self.tracker.is_exhausted():
            resets_in = self.tracker.seconds_until_reset()
            message = f"Rate limit exhausted locally, refusing {operation} (resets in {resets_in}s)"
            self.audit.error(
                operation, message,
                hotel_id=self.hotel_id, entity_type=entity_type, action="api_call",
                limit_remaining=self.tracker.five_min_remaining, limit_resets_in=resets_in,
                request_payload=clean_params or payload, trace_id=self.trace_id,
            )
            raise RateLimitExceeded(message, resets_in=resets_in)

        response = self._send(method, endpoint, clean_params, token_type, payload, operation, entity_type)
        if response.status_code == 401:
            logger.info(f"401 on {operation}, refreshing {token_type} token and retrying once")
            self.token_manager.refresh(token_type)
            if self.tracker.is_exhausted():
                raise RateLimitExceeded(
                    f"Rate limit exhausted locally, refusing retry of {operation}",
                    resets_in=self.tracker.seconds_until_reset(),
                )
            response = self._send(method, endpoint, clean_params, token_type, payload, operation, entity_type)

        return self._handle_response(response, operation)

    def _send(self, method, endpoint, params, token_type, payload, operation, entity_type) -> "_RawResult":
        token = self.token_manager.get_token(token_type)
        timer = OperationTimer()
        with timer:
            try:
                response = self.http.request(
                    method.upper(),
                    endpoint,
                    params=params or None,
                    json=payload,
                    headers=self._get_headers(token),
                )
            except httpx.TimeoutException as e:
                message = f"Timeout calling {operation}: {e}"
                self._audit_transport_failure(operation, entity_type, params or payload, message, timer)
                raise TransportError(message) from e
            except httpx.HTTPError as e:
                message = f"Transport failure calling {operation}: {e}"
                self._audit_transport_failure(operation, entity_type, params or payload, message, timer)
                raise TransportError(message) from e

        parsed = parse_rate_limit_headers(response.headers)
        self.tracker.apply_headers(parsed)
        record_rate_limit_sample(self.db, endpoint, response.headers, parsed)

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text[:1000]}

        ok = 200 <= response.status_code < 300
        error_message = None
        if not ok:
            error_message = f"HTTP {response.status_code}: {self._map_error(response.status_code, data).message}"

        self.audit.log(
            operation,
            status="success" if ok else "error",
            hotel_id=self.hotel_id,
            entity_type=entity_type,
            action="api_call",
            cost=parsed.cost,
            limit_remaining=parsed.five_min_remaining,
            limit_resets_in=parsed.five_min_resets_in,
            duration_ms=timer.duration_ms,
            records_processed=len(data.get("data", [])) if isinstance(data, dict) and isinstance(data.get("data"), list) else None,
            request_payload=params or payload,
            response_payload=data if not ok else None,
            error_message=error_message,
            trace_id=self.trace_id,
        )
        logger.api_call(method.upper(), endpoint, response.status_code, timer.duration_ms, parsed.cost)

        if parsed.five_min_remaining is not None and parsed.five_min_remaining < settings.scheduler_min_credits:
            logger.warning(
                f"Low credit limit remaining: {parsed.five_min_remaining}, "
                f"resets in {parsed.five_min_resets_in}s"
            )

        return _RawResult(response.status_code, data, parsed, timer.duration_ms, dict(response.headers))

    def _audit_transport_failure(self, operation, entity_type, request_payload, message, timer):
        self.audit.error(
            operation, message,
            hotel_id=self.hotel_id, entity_type=entity_type, action="api_call",
            duration_ms=timer.elapsed_ms(), request_payload=request_payload, trace_id=self.trace_id,
        )

    def _handle_response(self, raw: "_RawResult", operation: str) -> ApiResponse:
        status = raw.status_code
        if 200 <= status < 300:
            return ApiResponse(
                status_code=status,
                data=raw.data,
                cost=raw.rate.cost,
                five_min_remaining=raw.rate.five_min_remaining,
                daily_remaining=raw.rate.daily_remaining,
                duration_ms=raw.duration_ms,
                headers=raw.headers,
            )

        error = self._map_error(status, raw.data)
        if status == 429:
            self.tracker.five_min_remaining = 0
            if raw.rate.five_min_resets_in is not None:
                self.tracker.five_min_resets_at = utcnow() + timedelta(seconds=raw.rate.five_min_resets_in)
            raise RateLimitExceeded(f"{operation}: HTTP 429 {error.message}", resets_in=raw.rate.five_min_resets_in)
        if status in (401, 403):
            raise AuthError(f"{operation}: HTTP {status} {error.message}")
        raise ApiError(
            f"{operation}: HTTP {status} {error.message}",
            status_code=status,
            error_code=error.code,
            retryable=error.retryable,
        )

    # ==================
    # Read operations
    # ==================

    def get_property(self, property_id: str, include_all_rooms: bool = True) -> Optional[Dict]:
        """Property with its room types"""
        response = self.call(
            "/properties",
            params={"id": property_id, "includeAllRooms": str(include_all_rooms).lower()},
        )
        records = response.records
        return records[0] if records else None

    def get_bookings(self, property_id: str, modified_from: datetime, max_pages: int = 50) -> List[Dict]:
        """All bookings modified since modified_from, following pagination"""
        bookings: List[Dict] = []
        page = 1
        while page <= max_pages:
            response = self.call(
                "/bookings",
                params={
                    "propertyId": property_id,
                    "modifiedFrom": modified_from.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "includeGuests": "true",
                    "includeInvoiceItems": "true",
                    "includeBookingGroup": "true",
                    "page": page if page > 1 else None,
                },
            )
            bookings.extend(response.records)
            pages = response.data.get("pages") if isinstance(response.data, dict) else None
            if not pages or not pages.get("nextPageExists"):
                break
            page += 1
        return bookings

    def get_rooms_calendar(self, property_id: str, start: date, end: date) -> List[Dict]:
        """
        Calendar days for every room of a property in [start, end].

        Beds24 nests days under each room; the result is flattened to one
        dict per (roomId, date).
        """
        response = self.call(
            "/inventory/rooms/calendar",
            params={
                "propertyId": property_id,
                "startDate": start.isoformat(),
                "endDate": end.isoformat(),
                "includePrices": "true",
                "includeMinStay": "true",
                "includeMaxStay": "true",
                "includeNumAvail": "true",
            },
        )
        days: List[Dict] = []
        for entry in response.records:
            nested = entry.get("calendar")
            if isinstance(nested, list):
                for day in nested:
                    days.extend(_expand_calendar_range(entry.get("roomId"), day))
            else:
                days.append(entry)
        return days


@dataclass
class _RawResult:
    status_code: int
    data: Any
    rate: RateLimitHeaders
    duration_ms: int
    headers: Dict[str, str]


def _expand_calendar_range(room_id, day: Dict) -> List[Dict]:
    """Beds24 collapses identical consecutive days into from/to ranges"""
    start = day.get("from") or day.get("date")
    end = day.get("to") or start
    if not start:
        return []
    try:
        current = date.fromisoformat(str(start)[:10])
        last = date.fromisoformat(str(end)[:10])
    except ValueError:
        return []

    expanded = []
    while current <= last:
        item = {k: v for k, v in day.items() if k not in ("from", "to")}
        item["roomId"] = room_id
        item["date"] = current.isoformat()
        expanded.append(item)
        current += timedelta(days=1)
    return expanded
