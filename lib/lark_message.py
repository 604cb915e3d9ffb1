"""Notification sink: text messages to a Lark group chat."""

from __future__ import annotations

import json
from typing import Optional

from lib.lark_client import LarkClient
from utils.errors import NotificationError, RemoteError
from utils.logging import logger


class LarkMessenger:
    def __init__(self, client: LarkClient) -> None:
        self.client = client

    def send_text(self, chat_id: str, text: str) -> Optional[str]:
        """
        Send a plain-text message to a group chat.

        Returns:
            The message id reported by the remote service, if any.

        Raises:
            NotificationError: If the remote call fails.
        """
        logger.info("Sending message to chat %s", chat_id)
        logger.debug("Message content: %s", text)
        try:
            data = self.client.call(
                "POST",
                "/open-apis/im/v1/messages",
                params={"receive_id_type": "chat_id"},
                payload={
                    "receive_id": chat_id,
                    "msg_type": "text",
                    "content": json.dumps({"text": text}, ensure_ascii=False),
                },
                context="Failed to send message",
            )
        except RemoteError as exc:
            raise NotificationError(str(exc), code=exc.code, msg=exc.msg, body=exc.body) from exc
        message_id = data.get("message_id")
        logger.info("Message sent to chat %s (message_id=%s)", chat_id, message_id)
        return message_id
