"""
Schema additions the message pipeline relies on.

Applied at startup through the ``exec_sql`` RPC when the database exposes it.
The unique indexes make a concurrent duplicate send fail at insert time.
"""
import logging
from typing import Any

logger = logging.getLogger(__name__)

MESSAGES_SCHEMA_SQL = """
ALTER TABLE messages ADD COLUMN IF NOT EXISTS workspace_id UUID;
ALTER TABLE messages ADD COLUMN IF NOT EXISTS external_id VARCHAR(255);
ALTER TABLE messages ADD COLUMN IF NOT EXISTS evolution_key_id VARCHAR(255);
ALTER TABLE messages ADD COLUMN IF NOT EXISTS status VARCHAR(20) DEFAULT 'sending';
ALTER TABLE messages ADD COLUMN IF NOT EXISTS metadata JSONB DEFAULT '{}';
ALTER TABLE messages ADD COLUMN IF NOT EXISTS file_url TEXT;
ALTER TABLE messages ADD COLUMN IF NOT EXISTS file_name TEXT;
ALTER TABLE messages ADD COLUMN IF NOT EXISTS mime_type VARCHAR(120);
ALTER TABLE messages ADD COLUMN IF NOT EXISTS reply_to_message_id UUID;
ALTER TABLE messages ADD COLUMN IF NOT EXISTS quoted_message JSONB;
ALTER TABLE messages ADD COLUMN IF NOT EXISTS delivered_at TIMESTAMP WITH TIME ZONE;
ALTER TABLE messages ADD COLUMN IF NOT EXISTS read_at TIMESTAMP WITH TIME ZONE;

CREATE UNIQUE INDEX IF NOT EXISTS uq_messages_conversation_external_id
    ON messages (conversation_id, external_id)
    WHERE external_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_messages_conversation_client_message_id
    ON messages (conversation_id, (metadata->>'client_message_id'))
    WHERE metadata->>'client_message_id' IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_messages_history
    ON messages (conversation_id, created_at DESC, id DESC);
CREATE INDEX IF NOT EXISTS idx_messages_evolution_key_id ON messages (evolution_key_id);
CREATE INDEX IF NOT EXISTS idx_messages_provider_msg_id ON messages ((metadata->>'provider_msg_id'));
"""


def ensure_messages_schema(client: Any) -> bool:
    try:
        client.rpc("exec_sql", {"sql": MESSAGES_SCHEMA_SQL}).execute()
    except Exception as e:
        logger.warning(f"Could not apply messages schema via exec_sql: {e}")
        return False
    return True
