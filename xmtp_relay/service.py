#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
XMTPService: owns one XMTP client and relays text messages to ethereum addresses.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Type, Union

from prometheus_client import Counter, Histogram

from xmtp_relay import utils
from xmtp_relay.errors import (
    CannotMessageError,
    ClientInitializationError,
    ConfigurationError,
    ConversationCreationError,
)
from xmtp_relay.network import Client, Conversation, Identifier, IdentifierKind
from xmtp_relay.signer import create_signer

relay_histogram = Histogram("relay_h", "Time to resolve a conversation and send")
relay_counter = Counter("relay_results", "Relayed messages by outcome", ["outcome"])

REQUIRED_VARS = ("PRIVATE_KEY", "XMTP_DB_ENCRYPTION_KEY", "XMTP_ENV")


@dataclass(frozen=True)
class XMTPConfig:
    private_key: str
    encryption_key: str
    environment: str
    db_path: str = utils.DEFAULT_DB_PATH

    def __repr__(self) -> str:
        # keep keys out of logs
        return f"XMTPConfig(environment={self.environment!r}, db_path={self.db_path!r})"


@dataclass(frozen=True)
class RelayResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, message_id: str) -> "RelayResult":
        return cls(True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> "RelayResult":
        return cls(False, error=error or "unknown error")

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "messageId": self.message_id}
        return {"success": False, "error": self.error}


def get_encryption_key_from_hex(hex_key: str) -> bytes:
    key = bytes.fromhex(hex_key.strip().removeprefix("0x"))
    if len(key) != 32:
        raise ValueError(f"db encryption key must be 32 bytes, got {len(key)}")
    return key


class XMTPService:
    """
    Relays messages to ethereum addresses over XMTP.

    Explicit arguments win over the environment. Holds at most one client;
    call start() to build it up front, or let the first send build it.
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        encryption_key: Optional[str] = None,
        environment: Optional[str] = None,
        db_path: Optional[str] = None,
        client_factory: Type[Client] = Client,
        timeout: Optional[float] = None,
    ) -> None:
        given = {
            "PRIVATE_KEY": private_key,
            "XMTP_DB_ENCRYPTION_KEY": encryption_key,
            "XMTP_ENV": environment,
        }
        env_vars = utils.validate_environment(k for k in REQUIRED_VARS if not given[k])
        self.config = XMTPConfig(
            private_key=private_key or env_vars["PRIVATE_KEY"],
            encryption_key=encryption_key or env_vars["XMTP_DB_ENCRYPTION_KEY"],
            environment=environment or env_vars["XMTP_ENV"],
            db_path=db_path or utils.get_secret("XMTP_DB_PATH") or utils.DEFAULT_DB_PATH,
        )
        if self.config.environment not in utils.XMTP_ENVS:
            raise ConfigurationError(
                f"XMTP_ENV must be one of {', '.join(utils.XMTP_ENVS)}, "
                f"not {self.config.environment!r}"
            )
        self.client_factory = client_factory
        self.timeout = utils.RELAY_TIMEOUT if timeout is None else timeout
        self.client: Optional[Client] = None
        self.client_lock = asyncio.Lock()

    async def __aenter__(self) -> "XMTPService":
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def start(self) -> Client:
        "build the client now rather than on the first message"
        return await self.get_or_create_client()

    async def get_or_create_client(self) -> Client:
        """
        Return the cached client, constructing it on first use.

        Raises:
          ClientInitializationError: construction failed; nothing is cached
        """
        async with self.client_lock:
            if self.client:
                return self.client
            try:
                signer = create_signer(self.config.private_key)
                db_encryption_key = get_encryption_key_from_hex(self.config.encryption_key)
                self.client = await self.client_factory.create(
                    signer,
                    db_encryption_key=db_encryption_key,
                    env=self.config.environment,
                    db_path=self.config.db_path,
                )
            except Exception as e:  # pylint: disable=broad-except
                logging.exception("Error initializing XMTP client")
                raise ClientInitializationError(
                    f"Failed to initialize XMTP client: {e}"
                ) from e
            logging.info("XMTP client initialized: %s", self.client)
            return self.client

    async def get_inbox_id_from_address(self, address: str) -> Optional[str]:
        """
        Find the inbox id of a member of a known conversation whose identifiers
        include address. Walks every conversation; errors count as not found.
        """
        target = address.lower()
        try:
            client = await self.get_or_create_client()
            for conversation in await client.conversations.list():
                for member in await conversation.members():
                    if member.inbox_id == client.inbox_id:
                        continue
                    states = await client.preferences.inbox_state_from_inbox_ids(
                        [member.inbox_id]
                    )
                    if not states:
                        continue
                    for identifier in states[0].identifiers:
                        if identifier.identifier.lower() == target:
                            return member.inbox_id
        except Exception:  # pylint: disable=broad-except
            logging.exception("Error getting inbox ID for address %s", address)
        return None

    async def resolve_conversation(self, recipient_address: str) -> Conversation:
        client = await self.get_or_create_client()
        await client.conversations.sync()
        conversation: Optional[Conversation] = None
        inbox_id = await self.get_inbox_id_from_address(recipient_address)
        if inbox_id:
            conversation = await client.conversations.get_dm_by_inbox_id(inbox_id)
        if conversation:
            return conversation
        identifier = Identifier(recipient_address.lower(), IdentifierKind.ETHEREUM)
        reachable = await self.client_factory.can_message(
            [identifier], self.config.environment
        )
        if not reachable.get(identifier.identifier):
            raise CannotMessageError(
                f"Address {recipient_address} cannot receive XMTP messages"
            )
        try:
            return await client.conversations.new_dm(recipient_address)
        except Exception as e:  # pylint: disable=broad-except
            raise ConversationCreationError(
                f"Cannot create conversation with {recipient_address}. "
                f"They may need to be active on XMTP first. Original error: {e}"
            ) from e

    async def _relay(self, recipient_address: str, message: str) -> RelayResult:
        conversation = await self.resolve_conversation(recipient_address)
        sent = await conversation.send(message)
        logging.info("Message sent to %s: %s", recipient_address, sent.id)
        return RelayResult.ok(sent.id)

    async def send_message(self, recipient_address: str, message: str) -> RelayResult:
        """
        Send message to recipient_address, reusing an existing DM when there is
        one. Never raises; failures come back as RelayResult(success=False).
        """
        start = time.time()
        try:
            if self.timeout:
                result = await asyncio.wait_for(
                    self._relay(recipient_address, message), self.timeout
                )
            else:
                result = await self._relay(recipient_address, message)
        except asyncio.TimeoutError:
            error = f"Timed out after {self.timeout}s sending to {recipient_address}"
            logging.error(error)
            result = RelayResult.failed(error)
        except Exception as e:  # pylint: disable=broad-except
            error = str(e) or type(e).__name__
            logging.error("Error sending message to %s: %s", recipient_address, error)
            result = RelayResult.failed(error)
        relay_histogram.observe(time.time() - start)
        relay_counter.labels("sent" if result.success else "failed").inc()
        return result

    relay = send_message

    async def send_messages(
        self, recipients: Iterable[Mapping[str, str]]
    ) -> list[RelayResult]:
        "relay to each {address, message} in turn"
        return [
            await self.send_message(recipient["address"], recipient["message"])
            for recipient in recipients
        ]

    async def can_message(
        self, addresses: Union[str, Iterable[str]]
    ) -> Union[bool, dict[str, bool]]:
        """
        Ask the network whether addresses can receive XMTP messages.

        One address gives a bool, a list or tuple gives a dict keyed by lowercased address.
        Errors are logged and read as "no".
        """
        address_list = [addresses] if isinstance(addresses, str) else list(addresses)
        lowered = [address.lower() for address in address_list]
        try:
            reachable = await self.client_factory.can_message(
                [Identifier(address) for address in lowered], self.config.environment
            )
        except Exception:  # pylint: disable=broad-except
            logging.exception("Error checking addresses")
            reachable = {}
        if isinstance(addresses, str):
            return bool(reachable.get(lowered[0]))
        return {address: bool(reachable.get(address)) for address in lowered}

    async def close(self) -> None:
        if not self.client:
            return
        client, self.client = self.client, None
        try:
            await client.close()
        except Exception:  # pylint: disable=broad-except
            logging.exception("error closing XMTP client")
        logging.info("XMTP connection closed")


async def send_xmtp_message(address: str, message: str, **config: Any) -> bool:
    "one-shot: check, send, close. extra kwargs go to XMTPService"
    async with XMTPService(**config) as xmtp_service:
        if not await xmtp_service.can_message(address):
            logging.warning("Address %s cannot receive XMTP messages", address)
            return False
        result = await xmtp_service.send_message(address, message)
        if result.success:
            logging.info("Message sent successfully to %s", address)
            return True
        logging.error("Failed to send to %s: %s", address, result.error)
        return False
