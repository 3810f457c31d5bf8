#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
EthereumRedisListener: subscribes to the ethereum-messages channel and relays
every {"ethereumAddress", "message"} payload through an XMTPService.
"""
import asyncio
import datetime
import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import redis.asyncio as redis
import termcolor
from redis.exceptions import RedisError

from xmtp_relay import utils
from xmtp_relay.service import RelayResult


class Relayer(Protocol):
    async def send_message(self, recipient_address: str, message: str) -> RelayResult:
        ...


class State(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True)
class RelayRequest:
    ethereum_address: str
    message: str

    @classmethod
    def parse(cls, raw: str) -> "RelayRequest":
        """
        Raises:
          ValueError: not JSON, or missing a string ethereumAddress/message
        """
        blob = json.loads(raw)
        if not isinstance(blob, dict):
            raise ValueError("payload is not a JSON object")
        address, message = blob.get("ethereumAddress"), blob.get("message")
        if not isinstance(address, str) or not address:
            raise ValueError("ethereumAddress missing or not a string")
        if not isinstance(message, str):
            raise ValueError("message missing or not a string")
        return cls(address, message)


def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class EthereumRedisListener:
    """
    Lifecycle: connect -> subscribe -> listen, one message at a time.
    A transport error drops us to DISCONNECTED; start() reconnects with
    backoff until stop() is called or the backoff runs out.
    """

    def __init__(
        self,
        xmtp_service: Relayer,
        url: str = "",
        channel: str = utils.CHANNEL,
        max_backoff: float = utils.MAX_BACKOFF,
    ) -> None:
        self.xmtp_service = xmtp_service
        self.url = url or utils.REDIS_URL
        self.channel = channel
        self.max_backoff = max_backoff
        self.subscriber: Optional[redis.Redis] = None
        self.pubsub: Optional[redis.client.PubSub] = None
        self.state = State.DISCONNECTED
        self.is_connected = False
        self.exiting = False
        self.restart_count = 0

    async def connect(self) -> None:
        logging.info("Connecting to Redis at %s", self.url)
        self.state = State.CONNECTING
        try:
            self.subscriber = redis.from_url(self.url)
            await self.subscriber.ping()
        except (RedisError, OSError) as e:
            logging.error(termcolor.colored(f"Connection error: {e}", "red"))
            self.state = State.DISCONNECTED
            self.is_connected = False
            raise
        logging.info("Connected to Redis")
        self.state = State.CONNECTED
        self.is_connected = True

    async def subscribe(self) -> None:
        assert self.subscriber, "connect() first"
        logging.info("Subscribing to channel: %s", self.channel)
        self.pubsub = self.subscriber.pubsub()
        await self.pubsub.subscribe(self.channel)
        self.state = State.SUBSCRIBED
        logging.info("Listening on %s", self.channel)

    async def handle_message(
        self, raw: Union[str, bytes], channel: Union[str, bytes]
    ) -> Optional[RelayResult]:
        """Parse and relay one bus message. Never raises; bad payloads are dropped."""
        if isinstance(channel, bytes):
            channel = channel.decode(errors="replace")
        if isinstance(raw, bytes):
            try:
                raw = raw.decode()
            except UnicodeDecodeError as e:
                logging.error(termcolor.colored(f"payload is not utf-8: {e}", "red"))
                return None
        logging.info(
            "ethereum message received at %s on %s: %s", now_iso(), channel, raw
        )
        try:
            request = RelayRequest.parse(raw)
        except ValueError as e:
            logging.error(termcolor.colored(f"JSON parsing error: {e}", "red"))
            return None
        logging.debug("parsed message: %s", request)
        try:
            result = await self.xmtp_service.send_message(
                request.ethereum_address, request.message
            )
        except Exception as e:  # pylint: disable=broad-except
            logging.exception("relay to %s raised", request.ethereum_address)
            result = RelayResult.failed(str(e) or type(e).__name__)
        if result.success:
            logging.info(
                "relayed to %s, message id %s", request.ethereum_address, result.message_id
            )
        else:
            logging.error(
                termcolor.colored(
                    f"relay to {request.ethereum_address} failed: {result.error}", "red"
                )
            )
        return result

    async def listen(self) -> None:
        "read messages until the connection breaks or we're stopped"
        assert self.pubsub, "subscribe() first"
        try:
            async for item in self.pubsub.listen():
                if self.exiting:
                    break
                if item.get("type") != "message":
                    continue
                await self.handle_message(item["data"], item["channel"])
        except (RedisError, OSError) as e:
            logging.error(termcolor.colored(f"Redis error: {e}", "red"))
        self.is_connected = False
        if not self.exiting:
            self.state = State.DISCONNECTED

    async def start(self) -> None:
        """
        Connect, subscribe and listen; after a transport error, reconnect with
        exponential backoff. Gives up once the backoff exceeds max_backoff.
        """
        self.restart_count = 0
        while not self.exiting:
            launch_time = time.time()
            try:
                await self.connect()
                await self.subscribe()
                await self.listen()
            except (RedisError, OSError) as e:
                logging.warning("redis connection failed: %s", e)
            if self.exiting:
                break
            await self.release()
            if time.time() - launch_time > self.max_backoff * 4:
                self.restart_count = 0
            self.restart_count += 1
            backoff = 0.5 * (2**self.restart_count - 1)
            if backoff > self.max_backoff:
                logging.info("listener exiting after %s retries", self.restart_count)
                break
            logging.info("listener will reconnect in %s second(s)", backoff)
            await asyncio.sleep(backoff)

    async def release(self) -> None:
        "drop the pubsub and connection, logging rather than raising"
        try:
            if self.pubsub:
                await self.pubsub.unsubscribe(self.channel)
                await self.pubsub.aclose()
            if self.subscriber:
                await self.subscriber.aclose()
        except (RedisError, OSError) as e:
            logging.error(termcolor.colored(f"Disconnection error: {e}", "red"))
        self.pubsub = None
        self.subscriber = None
        self.is_connected = False

    async def stop(self) -> None:
        "unsubscribe and disconnect; fine to call twice or before connect"
        self.exiting = True
        if self.state is State.DISCONNECTED and not self.subscriber:
            return
        self.state = State.DISCONNECTING
        await self.release()
        self.state = State.DISCONNECTED
        logging.info("Disconnected from Redis")

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected,
            "channel": self.channel,
            "timestamp": now_iso(),
        }
