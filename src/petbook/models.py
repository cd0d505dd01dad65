"""
Pydantic models for the documents petbook reads and writes.

Remote documents use camelCase field names (they are shared with the
web dashboard); the models expose snake_case attributes and accept
either spelling on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class RemoteModel(BaseModel):
    """Base for models mirrored from the remote store."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_remote(self) -> dict[str, Any]:
        """Serialize with the remote (camelCase) field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DeviceStatus(str, Enum):
    """Presence of a device as shown on the dashboard."""

    ONLINE = "online"
    OFFLINE = "offline"


class CommandStatus(str, Enum):
    """Lifecycle of a remote command: pending -> running -> done | error."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class MessageRole(str, Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Chat message states.

    User messages go pending -> sent. Assistant messages are created as
    streaming and finish as done or error.
    """

    PENDING = "pending"
    SENT = "sent"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


HISTORY_STATUSES = [MessageStatus.SENT.value, MessageStatus.DONE.value]


class LocalSnapshot(BaseModel):
    """Everything the sync engine mirrors from disk."""

    main_config: dict[str, Any] = Field(default_factory=dict)
    aux_files: dict[str, str] = Field(default_factory=dict)
    workspace_files: dict[str, str] = Field(default_factory=dict)


class DeviceInfo(RemoteModel):
    """Static facts about the host."""

    hostname: str
    platform: str
    arch: str
    python_version: str = Field(alias="pythonVersion")


class DeviceDocument(RemoteModel):
    """The remote record for one paired device (a "pet").

    Identity fields are owned by the pairing flow; config, workspace and
    system fields by the sync engine. Unknown fields are preserved.
    """

    name: Optional[str] = None
    revoked: bool = False
    status: Optional[str] = None
    config: Optional[dict[str, Any]] = None
    encrypted_config: Optional[str] = Field(default=None, alias="encryptedConfig")
    openclaw_files: Optional[dict[str, Any]] = Field(default=None, alias="openclawFiles")
    workspace: Optional[dict[str, Any]] = None
    device_env_vars: Optional[dict[str, Any]] = Field(default=None, alias="deviceEnvVars")
    device_secrets: Optional[dict[str, Any]] = Field(default=None, alias="deviceSecrets")

    @property
    def has_env_fields(self) -> bool:
        """Whether the document carries environment variables or secrets."""
        return bool(self.device_env_vars) or bool(self.device_secrets)


class HeartbeatRecord(RemoteModel):
    """Liveness record kept in its own sub-document."""

    last_seen: str = Field(default_factory=now_iso, alias="lastSeen")
    status: DeviceStatus = DeviceStatus.ONLINE


class Command(RemoteModel):
    """A command issued from the dashboard."""

    action: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    status: CommandStatus = CommandStatus.PENDING
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: Optional[str] = Field(default=None, alias="completedAt")


class ChatMessage(RemoteModel):
    """One message of a chat thread."""

    role: MessageRole
    content: str = ""
    status: MessageStatus
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
