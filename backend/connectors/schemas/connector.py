"""Pydantic schemas for the connector management API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from connectors.db.models.enums import ConnectorProvider, FolderSyncState

PermissionValue = Literal["read", "none"]
NodeType = Literal["folder", "file"]


class ConnectorNode(BaseModel):
    """A node of the permission tree as shown to a user."""

    provider: ConnectorProvider = ConnectorProvider.GOOGLE_DRIVE
    internal_id: str
    parent_internal_id: str | None = None
    type: NodeType
    title: str
    source_url: str | None = None
    expandable: bool = False
    permission: PermissionValue
    document_id: str | None = None
    last_updated_at: datetime | None = None
    sync_state: FolderSyncState | None = None


class ConnectorCreate(BaseModel):
    """Schema for creating a connector."""

    connection_id: str = Field(..., description="Id of stored Google credentials")
    workspace_id: str = Field(..., min_length=1, max_length=64)
    data_source_name: str = Field(..., min_length=1, max_length=255)


class ConnectorUpdate(BaseModel):
    """Schema for switching a connector to other credentials."""

    connection_id: str


class ConnectorResponse(BaseModel):
    """Schema for connector response."""

    id: str
    type: ConnectorProvider
    connection_id: str
    workspace_id: str
    data_source_name: str
    paused_at: datetime | None = None
    last_sync_success_at: datetime | None = None
    last_sync_error: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PermissionListResponse(BaseModel):
    """Schema for a permission tree listing."""

    resources: list[ConnectorNode]


class PermissionChangeRequest(BaseModel):
    """Schema for applying permission changes.

    Values are validated by the reconciler so an invalid entry rejects the
    whole batch with a connector error rather than a schema error.
    """

    resources: dict[str, str] = Field(default_factory=dict)


class PermissionChangeResponse(BaseModel):
    """Outcome of a permission change batch."""

    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class TitlesRequest(BaseModel):
    """Schema for a title lookup."""

    internal_ids: list[str] = Field(default_factory=list)


class TitlesResponse(BaseModel):
    """Titles keyed by internal id; unknown ids are absent."""

    titles: dict[str, str]


class ParentsResponse(BaseModel):
    """Parent chain from a node up to its root."""

    parents: list[str]


class ConfigValueRequest(BaseModel):
    """Schema for setting a config value."""

    value: str


class ConfigValueResponse(BaseModel):
    """Schema for a config value."""

    key: str
    value: str | None = None


class TriggerResponse(BaseModel):
    """Outcome of a workflow trigger."""

    status: str
