"""Matrix notifications via the client-server API."""

from __future__ import annotations

import logging
import uuid
from urllib.parse import quote

import httpx

from .config import LimitsConfig, MatrixConfig
from .errors import BotError

logger = logging.getLogger(__name__)


class MatrixBot:
    """Posts plain-text messages to Matrix rooms.

    With `silent` set, messages are logged instead of sent; useful against a staging org.
    """

    def __init__(
        self,
        *,
        config: MatrixConfig,
        limits: LimitsConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._limits = limits
        self._transport = transport

    @property
    def default_channel_id(self) -> str:
        return self._config.default_channel_id

    async def send_to_room(self, room_id: str, text: str) -> None:
        """Send `text` to `room_id`.

        Raises:
            BotError: code "Matrix" if the homeserver rejects the message.
        """
        if self._config.silent:
            logger.info("Matrix (silent) %s: %s", room_id, text)
            return

        txn_id = uuid.uuid4().hex
        url = (
            f"{self._config.homeserver}/_matrix/client/r0/rooms/{quote(room_id, safe='')}"
            f"/send/m.room.message/{txn_id}"
        )
        async with httpx.AsyncClient(
            follow_redirects=False,
            timeout=httpx.Timeout(timeout=self._limits.total_timeout_s, connect=self._limits.connect_timeout_s),
            transport=self._transport,
        ) as client:
            try:
                resp = await client.put(
                    url,
                    headers={"Authorization": f"Bearer {self._config.access_token}"},
                    json={"msgtype": "m.text", "body": text},
                )
            except httpx.HTTPError as exc:
                raise BotError(code="Matrix", message="Matrix request failed") from exc

        if resp.status_code >= 400:
            raise BotError(code="Matrix", message="Matrix homeserver rejected message", status_code=resp.status_code)

    async def send_to_default(self, text: str) -> None:
        await self.send_to_room(self._config.default_channel_id, text)
