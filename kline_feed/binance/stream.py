"""Binance websocket transport: kline and trade events for one symbol."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Union

import aiohttp

from .api import Candle, interval_to_ms


BINANCE_WS = "wss://stream.binance.com:9443"


class StreamError(ConnectionError):
    """Transport failure or a payload that cannot be parsed."""


@dataclass(frozen=True)
class TradeEvent:
    price: float
    quantity: float
    event_time: int


@dataclass(frozen=True)
class KlineEvent:
    candle: Candle
    is_closed: bool


Event = Union[TradeEvent, KlineEvent]


def stream_names(symbol: str, interval: str, with_trades: bool = False) -> List[str]:
    interval_to_ms(interval)
    sym = symbol.lower()
    names = [f"{sym}@kline_{interval}"]
    if with_trades:
        names.append(f"{sym}@trade")
    return names


def build_stream_url(symbol: str, interval: str, with_trades: bool = False) -> str:
    return f"{BINANCE_WS}/stream?streams={'/'.join(stream_names(symbol, interval, with_trades))}"


def parse_message(raw: str) -> Optional[Event]:
    """Decode one websocket text frame.

    Accepts raw ({"e": ...}) and combined ({"stream": ..., "data": {...}})
    payloads. Returns None for event types this feed does not consume and
    raises StreamError for malformed payloads.
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise StreamError(f"invalid JSON payload: {e}") from e
    if isinstance(data, dict) and "data" in data and "stream" in data:
        data = data["data"]
    if not isinstance(data, dict):
        raise StreamError(f"unexpected payload type: {type(data).__name__}")

    kind = data.get("e")
    try:
        if kind == "trade":
            return TradeEvent(price=float(data["p"]), quantity=float(data["q"]), event_time=int(data["T"]))
        if kind == "kline":
            k = data["k"]
            candle = Candle(
                open_time=int(k["t"]),
                open=float(k["o"]),
                high=float(k["h"]),
                low=float(k["l"]),
                close=float(k["c"]),
                volume=float(k["v"]),
                close_time=int(k["T"]),
            )
            return KlineEvent(candle=candle, is_closed=bool(k["x"]))
    except (KeyError, TypeError, ValueError) as e:
        raise StreamError(f"malformed {kind} payload: {e!r}") from e
    return None


class KlineStream:
    """Async iterator over parsed events from one websocket connection.

    Any transport error, server close or malformed payload raises StreamError;
    reconnecting is the caller's decision.
    """

    def __init__(self, symbol: str, interval: str, with_trades: bool = False, receive_timeout: float = 120.0):
        self.symbol = symbol.upper()
        self.interval = interval
        self.url = build_stream_url(symbol, interval, with_trades)
        self.receive_timeout = receive_timeout

    async def events(self) -> AsyncIterator[Event]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(self.url, heartbeat=30, receive_timeout=self.receive_timeout) as ws:
                    print(f"[INFO] Connected! Streaming {self.url}")
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            event = parse_message(msg.data)
                            if event is not None:
                                yield event
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            raise StreamError(f"websocket error: {ws.exception()}")
                    raise StreamError(f"websocket closed by server (code={ws.close_code})")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StreamError(f"transport error: {e}") from e
