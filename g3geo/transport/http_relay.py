"""
g3geo HTTP Relay Transport

A P2PTransport for peers that cannot run a native pub/sub stack. Messages
go through a relay gateway over HTTP:

    POST /publish                       {"topic", "payload" (base64)}
    POST /direct/{peer_id}              {"payload" (base64)}
    GET  /topics/{topic}/messages?since={cursor}
         -> {"messages": [{"payload", "seq"}], "cursor"}

Subscriptions are served by one polling task per topic. Every HTTP failure
is logged and reported as a False return; nothing here raises into the
geo layer.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx

from .base import MessageHandler, P2PTransport, dispatch


logger = logging.getLogger(__name__)


class HttpRelayTransport(P2PTransport):
    """
    Relay-gateway transport built on httpx.

    Example:
        transport = HttpRelayTransport("https://relay.example.net", peer_id="abc")
        await transport.connect()
        await transport.publish("/g3zkp/geo/hazard/v1", payload)
    """

    def __init__(
        self,
        base_url: str,
        peer_id: str = "anonymous",
        timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Relay gateway root URL
            peer_id: Identifier sent with every request
            timeout_seconds: Per-request timeout
            poll_interval_seconds: Delay between subscription polls
            client: Pre-built client (tests inject one with MockTransport)
        """
        self._base_url = base_url
        self._peer_id = peer_id
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._client = client
        self._initialized = False
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._cursors: Dict[str, int] = {}
        self._poll_tasks: Dict[str, asyncio.Task] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"X-Peer-Id": self._peer_id},
            )
        return self._client

    def is_initialized(self) -> bool:
        return self._initialized

    async def connect(self) -> bool:
        """Health-check the relay. Marks the transport initialized on success."""
        try:
            client = await self._get_client()
            response = await client.get("/health")
            self._initialized = response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Relay health check failed: {e}")
            self._initialized = False

        if self._initialized:
            logger.info(f"Connected to relay {self._base_url}")
        return self._initialized

    async def publish(self, topic: str, payload: bytes) -> bool:
        if not self._initialized:
            return False
        try:
            client = await self._get_client()
            response = await client.post(
                "/publish",
                json={"topic": topic, "payload": base64.b64encode(payload).decode("ascii")},
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Relay publish to {topic} failed: {e}")
            return False

    async def send_direct(self, peer_id: str, payload: bytes) -> bool:
        if not self._initialized:
            return False
        try:
            client = await self._get_client()
            response = await client.post(
                f"/direct/{quote(peer_id, safe='')}",
                json={"payload": base64.b64encode(payload).decode("ascii")},
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Relay direct message to {peer_id} failed: {e}")
            return False

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._handlers.setdefault(topic, []).append(handler)
        if topic not in self._poll_tasks:
            self._cursors.setdefault(topic, 0)
            self._poll_tasks[topic] = asyncio.get_running_loop().create_task(
                self._poll_loop(topic)
            )

    async def poll_once(self, topic: str) -> int:
        """
        Fetch and dispatch new messages for one topic.

        Returns:
            Number of messages dispatched
        """
        try:
            client = await self._get_client()
            response = await client.get(
                f"/topics/{quote(topic, safe='')}/messages",
                params={"since": self._cursors.get(topic, 0)},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Relay poll for {topic} failed: {e}")
            return 0

        if not isinstance(body, dict):
            logger.warning(f"Relay poll for {topic} returned a non-object body")
            return 0
        messages = body.get("messages")
        if not isinstance(messages, list):
            messages = []

        dispatched = 0
        for message in messages:
            try:
                payload = base64.b64decode(message["payload"], validate=True)
            except (KeyError, TypeError, binascii.Error):
                logger.warning(f"Dropping malformed relay message on {topic}")
                continue
            for handler in list(self._handlers.get(topic, [])):
                try:
                    await dispatch(handler, payload)
                except Exception as e:
                    logger.error(f"Relay handler for {topic} failed: {e}", exc_info=True)
            dispatched += 1

        cursor = body.get("cursor")
        if isinstance(cursor, int):
            self._cursors[topic] = cursor
        return dispatched

    async def _poll_loop(self, topic: str) -> None:
        while True:
            if self._initialized:
                await self.poll_once(topic)
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        for task in self._poll_tasks.values():
            task.cancel()
        for task in self._poll_tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_tasks.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._initialized = False
