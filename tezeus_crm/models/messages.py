"""Modelos de requisição do pipeline de mensagens."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


# ==================== SEND ====================

class SendMessageBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str
    content: Optional[str] = None
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    sender_id: Optional[str] = None
    sender_type: Optional[str] = None
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId")
    reply_to_message_id: Optional[str] = None
    quoted_message: Optional[Dict[str, Any]] = None


# ==================== HISTORY ====================

class HistoryFetch(BaseModel):
    conversation_id: str
    limit: Optional[int] = None
    before: Optional[str] = None


# ==================== CALLBACKS ====================

class MediaCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    base64: Optional[str] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    message_type: Optional[str] = Field(default=None, alias="messageType")
    workspace_id: Optional[str] = None


class RelayStatusCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: Optional[str] = Field(default=None, alias="messageId")
    provider_msg_id: Optional[str] = None
    status: str
    provider: Optional[str] = None
    workspace_id: Optional[str] = None
