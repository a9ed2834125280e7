"""
Bybit WebSocket Trade Channel.
Places orders over the authenticated trade stream to skip HTTP overhead.
Callers fall back to REST whenever the channel is not ready.
"""

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from config.settings import settings
from liqtrader.exceptions import ChannelUnavailable, TransientIOFailure
from utils.logger import log


class TradeChannel:
    """
    Low-latency order channel.

    Features:
    - Authentication on connect
    - Request/response correlation by reqId
    - Bounded wait per order (timeout means outcome unknown)
    - Disables itself after repeated failed connections
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        url: Optional[str] = None,
        order_timeout: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
    ):
        self.api_key = api_key or settings.exchange.api_key
        self.api_secret = api_secret or settings.exchange.api_secret
        self.url = url or settings.exchange.endpoints["ws_trade"]
        self.order_timeout = order_timeout or settings.client.ws_order_timeout_seconds
        self.max_reconnect_attempts = (
            max_reconnect_attempts or settings.client.ws_max_reconnect_attempts
        )
        self.recv_window = settings.exchange.recv_window

        self.ws = None
        self.running = False
        self.authenticated = False
        self.disabled = False
        self.reconnect_attempts = 0
        self._pending: Dict[str, asyncio.Future] = {}

    def is_ready(self) -> bool:
        return self.ws is not None and self.authenticated and not self.disabled

    async def connect(self):
        """Connect and keep the channel alive until stopped or disabled."""
        self.running = True

        while self.running and not self.disabled:
            try:
                log.info(f"Connecting trade channel: {self.url}")
                async with websockets.connect(self.url, ping_interval=settings.client.ws_ping_seconds) as ws:
                    self.ws = ws
                    self.reconnect_attempts = 0
                    await self._authenticate()
                    await self._listen()
            except (ConnectionClosed, OSError, asyncio.TimeoutError) as e:
                log.warning(f"Trade channel error: {e}")
            finally:
                self.ws = None
                self.authenticated = False
                self._reject_pending("trade channel disconnected")

            if not self.running:
                break
            self.reconnect_attempts += 1
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                self.disabled = True
                log.warning(
                    f"Trade channel unavailable after {self.reconnect_attempts} attempts, using REST only"
                )
                break
            log.info(f"Trade channel retry {self.reconnect_attempts}/{self.max_reconnect_attempts} in 3s")
            await asyncio.sleep(3)

    async def _authenticate(self):
        expires = int(time.time() * 1000) + 10000
        signature = hmac.new(
            self.api_secret.encode("utf-8"),
            f"GET/realtime{expires}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        await self.ws.send(json.dumps({"op": "auth", "args": [self.api_key, expires, signature]}))

    async def _listen(self):
        async for message in self.ws:
            try:
                self._handle_message(json.loads(message))
            except ValueError as e:
                log.error(f"Trade channel parse error: {e}")

    def _handle_message(self, msg: Dict[str, Any]):
        if msg.get("op") == "auth":
            self.authenticated = msg.get("retCode", 0) == 0 and msg.get("success", True)
            if self.authenticated:
                log.info("Trade channel authenticated")
            else:
                log.error(f"Trade channel auth failed: {msg.get('retMsg')}")
            return

        req_id = msg.get("reqId")
        future = self._pending.pop(req_id, None) if req_id else None
        if future is not None and not future.done():
            future.set_result(
                {"retCode": msg.get("retCode", -1), "retMsg": msg.get("retMsg", ""),
                 "result": msg.get("data") or {}}
            )

    def _reject_pending(self, reason: str):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransientIOFailure(reason))
        self._pending.clear()

    async def place_order(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Submit one order.create request.

        Returns:
            REST-shaped response dict (retCode, retMsg, result)

        Raises:
            ChannelUnavailable: channel not connected or disabled
            TransientIOFailure: no answer within the timeout
        """
        if not self.is_ready():
            raise ChannelUnavailable("trade channel not ready")

        req_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        request = {
            "reqId": req_id,
            "header": {
                "X-BAPI-TIMESTAMP": str(int(time.time() * 1000)),
                "X-BAPI-RECV-WINDOW": self.recv_window,
            },
            "op": "order.create",
            "args": [body],
        }
        try:
            await self.ws.send(json.dumps(request))
            return await asyncio.wait_for(future, timeout=self.order_timeout)
        except asyncio.TimeoutError as e:
            raise TransientIOFailure(f"trade channel timeout for {body.get('symbol')}") from e
        except ConnectionClosed as e:
            raise TransientIOFailure(f"trade channel closed: {e}") from e
        finally:
            self._pending.pop(req_id, None)

    def stop(self):
        """Stop the channel."""
        self.running = False
        log.info("Stopping trade channel...")
