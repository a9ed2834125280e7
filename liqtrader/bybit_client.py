"""
Bybit V5 API Client.
Handles all authenticated and public REST requests for linear perpetuals.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import requests

from config.settings import settings
from liqtrader.client_interface import (
    Candle,
    ClosedPnlRecord,
    Execution,
    InstrumentInfo,
    OrderBookTop,
    OrderStatus,
    Ticker,
    VenuePosition,
    VenueResponse,
)
from liqtrader.exceptions import TransientIOFailure, VenueRejection
from liqtrader.models import Side
from utils.logger import log

# "not modified" answers for idempotent account settings
LEVERAGE_NOT_MODIFIED = 110043
POSITION_MODE_NOT_MODIFIED = 110025


class BybitClient:
    """
    Client for interacting with the Bybit V5 REST API.
    Handles HMAC-SHA256 authentication for private endpoints.

    Read methods raise VenueRejection on a non-zero retCode. Write methods
    return a VenueResponse and leave the decision to the caller.
    """

    CATEGORY = "linear"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        recv_window: Optional[str] = None,
    ):
        self.api_key = api_key or settings.exchange.api_key
        self.api_secret = api_secret or settings.exchange.api_secret
        self.base_url = base_url or settings.exchange.base_url
        self.recv_window = recv_window or settings.exchange.recv_window

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "liqtrader/1.0",
            }
        )

        log.info(f"Bybit client initialized for {self.base_url}")

    def _generate_signature(self, timestamp: str, payload: str) -> str:
        """
        Generate HMAC-SHA256 signature for authenticated requests.

        The signature is created by hashing:
        timestamp + api_key + recv_window + (query string | json body)
        """
        message = timestamp + self.api_key + self.recv_window + payload
        return hmac.new(
            self.api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def _get_auth_headers(self, payload: str) -> Dict[str, str]:
        """Generate authentication headers for private endpoints."""
        timestamp = str(int(time.time() * 1000))
        return {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-SIGN": self._generate_signature(timestamp, payload),
            "X-BAPI-RECV-WINDOW": self.recv_window,
        }

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        data: Optional[Dict] = None,
        authenticated: bool = True,
        check: bool = True,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the Bybit API.

        Args:
            method: HTTP method (GET, POST)
            endpoint: API endpoint path (e.g., '/v5/order/create')
            params: Query parameters
            data: Request body data
            authenticated: Whether to add auth headers
            check: Raise VenueRejection on a non-zero retCode

        Returns:
            API response as dictionary

        Raises:
            TransientIOFailure: network error, timeout or 5xx/429
            VenueRejection: the venue refused the request
        """
        url = f"{self.base_url}{endpoint}"

        query_string = ""
        if params:
            query_string = "&".join(f"{k}={v}" for k, v in params.items())
            url = f"{url}?{query_string}"

        payload = json.dumps(data) if data else ""

        headers = {}
        if authenticated:
            headers = self._get_auth_headers(payload if method == "POST" else query_string)

        try:
            log.debug(f"API Request: {method} {url}")
            response = self.session.request(
                method=method,
                url=url,
                data=payload if data else None,
                headers=headers,
                timeout=(5, 30),
            )
        except requests.exceptions.RequestException as e:
            log.error(f"Request failed: {method} {endpoint}: {e}")
            raise TransientIOFailure(f"{method} {endpoint}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            log.error(f"API Error: {response.status_code} on {endpoint}")
            raise TransientIOFailure(f"HTTP {response.status_code} on {endpoint}")

        try:
            response_data = response.json()
        except ValueError as e:
            raise TransientIOFailure(f"Invalid JSON from {endpoint}") from e

        if not response.ok:
            msg = response_data.get("retMsg", "Unknown error")
            if response.status_code == 401:
                msg += " (Check your API key and secret in .env)"
            log.error(f"API Error: {response.status_code} - {msg}")
            raise VenueRejection(f"Bybit API Error: {msg}", response_data.get("retCode"), response_data)

        if check and response_data.get("retCode") != 0:
            raise VenueRejection(
                f"Bybit API Error: {response_data.get('retMsg')}",
                response_data.get("retCode"),
                response_data,
            )

        return response_data

    def _list(self, endpoint: str, params: Dict, authenticated: bool = True) -> List[Dict]:
        response = self._request("GET", endpoint, params=params, authenticated=authenticated)
        return (response.get("result") or {}).get("list") or []

    # ==================== PUBLIC ENDPOINTS ====================

    def get_server_time(self) -> int:
        response = self._request("GET", "/v5/market/time", authenticated=False)
        return int(response.get("result", {}).get("timeNano", "0")) // 1_000_000

    def get_instruments(self) -> List[InstrumentInfo]:
        """Get trading rules for all linear contracts, following the cursor."""
        instruments = []
        cursor = ""
        while True:
            params = {"category": self.CATEGORY, "limit": 1000}
            if cursor:
                params["cursor"] = cursor
            response = self._request(
                "GET", "/v5/market/instruments-info", params=params, authenticated=False
            )
            result = response.get("result") or {}
            instruments.extend(
                InstrumentInfo.from_api_response(item) for item in result.get("list") or []
            )
            cursor = result.get("nextPageCursor") or ""
            if not cursor:
                break
        return instruments

    def get_tickers(self, symbol: Optional[str] = None) -> List[Ticker]:
        params = {"category": self.CATEGORY}
        if symbol:
            params["symbol"] = symbol
        return [
            Ticker.from_api_response(item)
            for item in self._list("/v5/market/tickers", params, authenticated=False)
        ]

    def get_klines(self, symbol: str, interval: str = "1", limit: int = 20) -> List[Candle]:
        """
        Get recent candles, oldest first.

        The venue returns newest first; the list is reversed here.
        """
        params = {"category": self.CATEGORY, "symbol": symbol, "interval": interval, "limit": limit}
        rows = self._list("/v5/market/kline", params, authenticated=False)
        return [Candle.from_api_response(row) for row in reversed(rows)]

    def get_orderbook_top(self, symbol: str) -> OrderBookTop:
        params = {"category": self.CATEGORY, "symbol": symbol, "limit": 1}
        response = self._request("GET", "/v5/market/orderbook", params=params, authenticated=False)
        return OrderBookTop.from_api_response(response.get("result") or {})

    # ==================== PRIVATE READS ====================

    def get_wallet_balance(self) -> List[Dict]:
        """Raw unified account entries (see balance_utils)."""
        return self._list("/v5/account/wallet-balance", {"accountType": "UNIFIED"})

    def get_positions(self) -> List[VenuePosition]:
        """Open positions only (size > 0)."""
        rows = self._list(
            "/v5/position/list", {"category": self.CATEGORY, "settleCoin": "USDT", "limit": 200}
        )
        positions = [VenuePosition.from_api_response(row) for row in rows if float(row.get("size") or 0) > 0]
        return positions

    def get_closed_pnl(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedPnlRecord]:
        """Closed PnL records, newest first."""
        params = {"category": self.CATEGORY, "limit": limit}
        if symbol:
            params["symbol"] = symbol
        return [
            ClosedPnlRecord.from_api_response(row)
            for row in self._list("/v5/position/closed-pnl", params)
        ]

    def get_executions(self, symbol: str, order_id: str, limit: int = 20) -> List[Execution]:
        params = {"category": self.CATEGORY, "symbol": symbol, "orderId": order_id, "limit": limit}
        return [Execution.from_api_response(row) for row in self._list("/v5/execution/list", params)]

    def get_order(
        self, symbol: str, order_id: Optional[str] = None, order_link_id: Optional[str] = None
    ) -> Optional[OrderStatus]:
        """
        Look up one order by id or client link id.
        Falls back to order history once the order has left the active book.
        """
        params = {"category": self.CATEGORY, "symbol": symbol}
        if order_id:
            params["orderId"] = order_id
        if order_link_id:
            params["orderLinkId"] = order_link_id

        for endpoint in ("/v5/order/realtime", "/v5/order/history"):
            rows = self._list(endpoint, params)
            if rows:
                return OrderStatus.from_api_response(rows[0])
        return None

    # ==================== WRITES ====================

    def build_order_body(
        self,
        symbol: str,
        side: Side,
        qty: float,
        order_type: str = "Market",
        price: Optional[float] = None,
        time_in_force: str = "GTC",
        reduce_only: bool = False,
        order_link_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Order body shared by the REST and websocket channels."""
        body = {
            "category": self.CATEGORY,
            "symbol": symbol,
            "side": Side(side).value,
            "orderType": order_type,
            "qty": str(qty),
            "timeInForce": time_in_force,
            "positionIdx": 0,
        }
        if price is not None and order_type == "Limit":
            body["price"] = str(price)
        if reduce_only:
            body["reduceOnly"] = True
        if order_link_id:
            body["orderLinkId"] = order_link_id
        return body

    def place_order(self, **order) -> VenueResponse:
        """
        Place an order.

        Args are those of build_order_body.

        Returns:
            VenueResponse; ok is False when the venue rejected the order
        """
        body = self.build_order_body(**order)
        response = VenueResponse.from_api_response(
            self._request("POST", "/v5/order/create", data=body, check=False)
        )
        if response.ok:
            log.info(
                f"TRADE: Order placed {body['side']} {body['qty']} {body['symbol']} "
                f"{body['orderType']} ({body['timeInForce']}) - ID: {response.order_id}"
            )
        else:
            log.warning(f"Order rejected for {body['symbol']}: {response.message} ({response.ret_code})")
        return response

    def cancel_order(self, symbol: str, order_id: str) -> VenueResponse:
        body = {"category": self.CATEGORY, "symbol": symbol, "orderId": order_id}
        return VenueResponse.from_api_response(
            self._request("POST", "/v5/order/cancel", data=body, check=False)
        )

    def set_leverage(self, symbol: str, leverage: float) -> VenueResponse:
        lev = str(leverage)
        body = {"category": self.CATEGORY, "symbol": symbol, "buyLeverage": lev, "sellLeverage": lev}
        return VenueResponse.from_api_response(
            self._request("POST", "/v5/position/set-leverage", data=body, check=False),
            ok_codes=(0, LEVERAGE_NOT_MODIFIED),
        )

    def switch_one_way_mode(self, symbol: str) -> VenueResponse:
        body = {"category": self.CATEGORY, "symbol": symbol, "mode": 0}
        return VenueResponse.from_api_response(
            self._request("POST", "/v5/position/switch-mode", data=body, check=False),
            ok_codes=(0, POSITION_MODE_NOT_MODIFIED),
        )

    def set_trading_stop(
        self,
        symbol: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        trailing_stop: Optional[float] = None,
        active_price: Optional[float] = None,
        tp_limit: bool = False,
    ) -> VenueResponse:
        """Attach SL/TP and/or a trailing stop to the open position."""
        body: Dict[str, Any] = {"category": self.CATEGORY, "symbol": symbol, "positionIdx": 0}
        if stop_loss is not None:
            body["stopLoss"] = str(stop_loss)
        if take_profit is not None:
            body["takeProfit"] = str(take_profit)
            if tp_limit:
                body["tpOrderType"] = "Limit"
                body["tpLimitPrice"] = str(take_profit)
        if trailing_stop is not None:
            body["trailingStop"] = str(trailing_stop)
        if active_price is not None:
            body["activePrice"] = str(active_price)
        return VenueResponse.from_api_response(
            self._request("POST", "/v5/position/trading-stop", data=body, check=False)
        )

    def close_position(
        self,
        symbol: str,
        side: Side,
        qty: float,
        order_type: str = "Market",
        price: Optional[float] = None,
    ) -> VenueResponse:
        """Reduce-only order on the opposite side. Limit closes are PostOnly."""
        log.info(f"TRADE: Closing position {symbol} {Side(side).value} {qty} ({order_type})")
        return self.place_order(
            symbol=symbol,
            side=Side(side).opposite,
            qty=qty,
            order_type=order_type,
            price=price,
            time_in_force="PostOnly" if order_type == "Limit" else "GTC",
            reduce_only=True,
        )

    def test_connection(self) -> bool:
        """Test API connection and authentication."""
        try:
            self.get_server_time()
            log.info("Public API connection successful")
            self.get_wallet_balance()
            log.info("Authentication successful")
            return True
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Connection test failed: {e}")
            return False
