"""
Validated views over the JSON blobs stored on SyncCheckpoint.settings and
ChannelConnection.channel_settings. Services never read those columns as
raw dicts; they go through these models.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncSettings(BaseModel):
    """
    Per-hotel sync settings.

    Fields:
        property_id: external property id; hotels without one are never synced
        auto_disabled_due_to_rate_limit: set by auto recovery when it turns sync off
        auto_disabled_reason: the error message that triggered the disable
        disabled_at: when sync was turned off by recovery or a reset
        bootstrap_trace_id: trace id of the bootstrap run that created the checkpoint
        resync_requested_at: last manual rewind via resync_from_date
    """
    model_config = ConfigDict(extra="ignore")

    property_id: Optional[str] = None
    auto_disabled_due_to_rate_limit: bool = False
    auto_disabled_reason: Optional[str] = None
    disabled_at: Optional[datetime] = None
    bootstrap_trace_id: Optional[str] = None
    resync_requested_at: Optional[datetime] = None

    @classmethod
    def from_blob(cls, blob: Optional[Dict[str, Any]]) -> "SyncSettings":
        return cls.model_validate(blob or {})

    def to_blob(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ChannelSettings(BaseModel):
    """Per-channel behaviour flags"""
    model_config = ConfigDict(extra="ignore")

    send_confirmation: bool = False
    confirmation_email: Optional[str] = None

    @classmethod
    def from_blob(cls, blob: Optional[Dict[str, Any]]) -> "ChannelSettings":
        return cls.model_validate(blob or {})


class RecoveryOptions(BaseModel):
    """Flags for manual recovery; any combination may be set"""
    model_config = ConfigDict(populate_by_name=True)

    force_bootstrap: bool = False
    reset_tokens: bool = False
    clear_errors: bool = False
    resync_from_date: Optional[datetime] = None
    property_id: Optional[str] = Field(default=None, description="Needed for force_bootstrap on a hotel without a checkpoint")
