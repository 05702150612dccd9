"""
Token Manager

Obtains, caches and refreshes Beds24 access tokens. One ApiToken row per
token type ("read", "write"); the long-lived refresh credentials come from
settings and never touch the database.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import settings
from ..models.channel_integration import ApiToken, TokenType, DEFAULT_PROVIDER
from ..utils.dates import parse_datetime, utcnow
from ..utils.errors import ApiError, AuthError, TransportError
from .audit_service import AuditLogger, OperationTimer
from .beds24_client import record_rate_limit_sample

logger = logging.getLogger(__name__)

READ_SCOPES = [
    "read:properties",
    "read:inventory",
    "read:bookings",
    "read:bookings-personal",
    "read:bookings-financial",
]
WRITE_SCOPES = [
    "write:inventory",
    "write:bookings-messages",
    "write:channels",
]

# Used when the refresh response carries no expiry at all
DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)


@dataclass
class TokenResult:
    access_token: str
    expires_at: datetime
    token_type: str


def scopes_for(token_type: str) -> List[str]:
    return READ_SCOPES if token_type == TokenType.READ.value else WRITE_SCOPES


class TokenManager:

    def __init__(self, db: Session, http_client: Optional[httpx.Client] = None):
        self.db = db
        self.audit = AuditLogger(db)
        self._owns_http = http_client is None
        self.http = http_client or httpx.Client(
            base_url=settings.beds24_base_url,
            timeout=settings.beds24_timeout_seconds,
        )

    def close(self):
        if self._owns_http:
            self.http.close()

    def _validate_type(self, token_type: str) -> str:
        token_type = token_type.value if isinstance(token_type, TokenType) else token_type
        if token_type not in (TokenType.READ.value, TokenType.WRITE.value):
            raise AuthError(f"Unknown token type: {token_type}")
        return token_type

    def _get_row(self, token_type: str) -> Optional[ApiToken]:
        return self.db.query(ApiToken).filter(
            ApiToken.provider == DEFAULT_PROVIDER,
            ApiToken.token_type == token_type,
        ).first()

    def _refresh_credential(self, token_type: str) -> str:
        if token_type == TokenType.READ.value:
            return settings.beds24_read_refresh_token
        return settings.beds24_write_refresh_token

    def get_token(self, token_type: str = "read") -> str:
        """
        Return a usable access token, refreshing first when the stored one
        is missing or inside the expiry buffer.
        """
        token_type = self._validate_type(token_type)
        now = utcnow()
        buffer = timedelta(minutes=settings.token_refresh_buffer_minutes)

        row = self._get_row(token_type)
        if row is None or row.expires_at <= now + buffer:
            logger.info(f"{token_type} token missing or expiring, refreshing")
            return self.refresh(token_type).access_token

        row.last_used_at = now
        self.db.commit()
        return row.access_token

    def refresh(self, token_type: str = "read") -> TokenResult:
        """
        Exchange the refresh credential for a new access token.

        Raises AuthError if the credential is missing, invalid or revoked.
        """
        token_type = self._validate_type(token_type)
        credential = self._refresh_credential(token_type)
        operation = "token_refresh"

        if not credential:
            message = f"No refresh token configured for {token_type} token"
            self.audit.error(operation, message, entity_type="token", external_id=token_type)
            raise AuthError(message)

        timer = OperationTimer()
        with timer:
            try:
                response = self.http.get(
                    "/authentication/token",
                    headers={"refreshToken": credential, "Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                message = f"Token refresh transport failure: {e}"
                self.audit.error(operation, message, entity_type="token", external_id=token_type)
                raise TransportError(message) from e

        record_rate_limit_sample(self.db, "/authentication/token", response.headers)

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:500]}

        if response.status_code in (400, 401, 403):
            message = f"Token refresh rejected (HTTP {response.status_code}): refresh token invalid or revoked"
            self.audit.error(
                operation, message, entity_type="token", external_id=token_type,
                duration_ms=timer.duration_ms, response_payload=body,
            )
            raise AuthError(message)
        if response.status_code >= 300:
            message = f"Token refresh failed (HTTP {response.status_code})"
            self.audit.error(
                operation, message, entity_type="token", external_id=token_type,
                duration_ms=timer.duration_ms, response_payload=body,
            )
            raise ApiError(message, status_code=response.status_code)

        access_token = body.get("token") if isinstance(body, dict) else None
        if not access_token:
            message = "Token refresh response did not contain a token"
            self.audit.error(operation, message, entity_type="token", external_id=token_type)
            raise AuthError(message)

        expires_at = self._expiry_from(body)
        self.store_token(
            token_type,
            access_token,
            expires_at,
            scopes=body.get("scopes") or scopes_for(token_type),
            properties_access=body.get("properties") or [],
        )
        self.audit.success(
            operation, entity_type="token", external_id=token_type,
            duration_ms=timer.duration_ms, response_payload=body,
        )
        logger.info(f"Refreshed {token_type} token, expires at {expires_at.isoformat()}")
        return TokenResult(access_token=access_token, expires_at=expires_at, token_type=token_type)

    @staticmethod
    def _expiry_from(body: Dict) -> datetime:
        expires_in = body.get("expiresIn")
        if expires_in is not None:
            try:
                return utcnow() + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                pass
        expires_at = parse_datetime(body.get("expiresAt"))
        return expires_at or utcnow() + DEFAULT_TOKEN_LIFETIME

    def store_token(
        self,
        token_type: str,
        access_token: str,
        expires_at: datetime,
        scopes: Optional[List[str]] = None,
        properties_access: Optional[List] = None,
    ) -> ApiToken:
        """Upsert the single row for this token type"""
        token_type = self._validate_type(token_type)
        row = self._get_row(token_type)
        if row is None:
            row = ApiToken(provider=DEFAULT_PROVIDER, token_type=token_type)
            self.db.add(row)
        row.access_token = access_token
        row.expires_at = expires_at
        row.scopes = scopes if scopes is not None else scopes_for(token_type)
        row.properties_access = properties_access or []
        row.updated_at = utcnow()
        self.db.commit()
        return row

    def is_valid(self, token_type: str) -> bool:
        """True if a stored token exists and has not expired. Never refreshes."""
        row = self._get_row(self._validate_type(token_type))
        return row is not None and not row.is_expired(utcnow())

    def diagnostics(self) -> List[Dict]:
        now = utcnow()
        rows = self.db.query(ApiToken).filter(
            ApiToken.provider == DEFAULT_PROVIDER
        ).order_by(ApiToken.updated_at.desc()).all()
        return [
            {
                "type": row.token_type,
                "scopes": row.scopes or [],
                "expires_at": row.expires_at.isoformat() if row.expires_at else None,
                "last_used_at": row.last_used_at.isoformat() if row.last_used_at else None,
                "is_expired": row.is_expired(now),
                "properties_count": len(row.properties_access or []),
            }
            for row in rows
        ]

    def purge_tokens(self) -> int:
        """Delete every stored token; the next get_token() refreshes"""
        deleted = self.db.query(ApiToken).filter(
            ApiToken.provider == DEFAULT_PROVIDER
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"Purged {deleted} stored tokens")
        return deleted

    def remove_expired(self, now: Optional[datetime] = None) -> int:
        deleted = self.db.query(ApiToken).filter(
            ApiToken.provider == DEFAULT_PROVIDER,
            ApiToken.expires_at <= (now or utcnow()),
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted
