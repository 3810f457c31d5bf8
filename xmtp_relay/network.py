#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
Asynchronous python wrapper around an XMTP gateway's JSON-RPC API.

Mirrors the node SDK's object graph: Client, client.conversations,
client.preferences, Conversation. The gateway owns the MLS state and the
local database; we only hold session ids.
"""
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, Union

import aiohttp
from ulid2 import generate_ulid_as_base32 as get_uid

from xmtp_relay import utils
from xmtp_relay.errors import XMTPError

JSON = dict[str, Any]


class IdentifierKind(str, enum.Enum):
    ETHEREUM = "Ethereum"
    PASSKEY = "Passkey"


@dataclass(frozen=True)
class Identifier:
    identifier: str
    identifier_kind: IdentifierKind = IdentifierKind.ETHEREUM

    def to_dict(self) -> JSON:
        return {
            "identifier": self.identifier,
            "identifierKind": self.identifier_kind.value,
        }

    @classmethod
    def from_dict(cls, blob: JSON) -> "Identifier":
        return cls(
            blob["identifier"],
            IdentifierKind(blob.get("identifierKind") or IdentifierKind.ETHEREUM),
        )


@dataclass
class Member:
    inbox_id: str
    account_identifiers: list[Identifier] = field(default_factory=list)


@dataclass
class InboxState:
    inbox_id: str
    identifiers: list[Identifier] = field(default_factory=list)


@dataclass
class SentMessage:
    id: str
    conversation_id: str = ""


class SignerLike(Protocol):
    type: str

    def get_identifier(self) -> Identifier:
        ...

    async def sign_message(self, message: Union[str, bytes]) -> bytes:
        ...


class Gateway:
    """JSON-RPC transport to the XMTP gateway"""

    def __init__(self, url: str = "") -> None:
        self.url = url or utils.GATEWAY_URL
        logging.debug("xmtp gateway url: %s", self.url)

    async def req(self, method: str, **params: Any) -> Any:
        """
        Call a gateway method and return its result

        Raises:
          XMTPError: if the gateway returned an error or couldn't be reached
        """
        _params = {k: v for k, v in params.items() if v is not None}
        data = {
            "jsonrpc": "2.0",
            "id": f"{method}-{get_uid()}",
            "method": method,
            "params": _params,
        }
        try:
            async with aiohttp.ClientSession() as sess:
                xmtp_req = sess.post(
                    self.url,
                    data=json.dumps(data),
                    headers={"Content-Type": "application/json"},
                )
                async with xmtp_req as resp:
                    blob = await resp.json(content_type=None)
        except (aiohttp.ClientError, json.JSONDecodeError) as e:
            raise XMTPError(f"{method} failed: {e}") from e
        if not isinstance(blob, dict):
            raise XMTPError(f"{method} returned a malformed response")
        if blob.get("error"):
            error = blob["error"]
            logging.error("xmtp gateway: %s", json.dumps(error))
            if isinstance(error, dict):
                raise XMTPError(str(error.get("message") or error), error.get("code"))
            raise XMTPError(str(error))
        return blob.get("result")


class Conversation:
    def __init__(self, client: "Client", blob: JSON) -> None:
        self.client = client
        self.id: str = blob["id"]
        self.peer_inbox_id: Optional[str] = blob.get("peerInboxId")

    async def members(self) -> list[Member]:
        result = await self.client.req("conversation.members", conversation_id=self.id)
        return [
            Member(
                member["inboxId"],
                [Identifier.from_dict(i) for i in member.get("accountIdentifiers") or []],
            )
            for member in result or []
        ]

    async def send(self, text: str) -> SentMessage:
        result = await self.client.req(
            "conversation.send", conversation_id=self.id, content=text
        )
        if not isinstance(result, dict) or not result.get("id"):
            raise XMTPError(f"send to {self.id} didn't return a message id")
        return SentMessage(result["id"], self.id)

    def __repr__(self) -> str:
        return f"<Conversation {self.id}>"


class Conversations:
    def __init__(self, client: "Client") -> None:
        self.client = client

    async def sync(self) -> None:
        await self.client.req("conversations.sync")

    async def list(self) -> list[Conversation]:
        result = await self.client.req("conversations.list")
        return [Conversation(self.client, blob) for blob in result or []]

    async def get_dm_by_inbox_id(self, inbox_id: str) -> Optional[Conversation]:
        result = await self.client.req(
            "conversations.get_dm_by_inbox_id", inbox_id=inbox_id
        )
        return Conversation(self.client, result) if result else None

    async def new_dm(self, address: str) -> Conversation:
        "create a dm straight from an ethereum address; the gateway resolves the inbox"
        result = await self.client.req(
            "conversations.new_dm",
            identifier=Identifier(address.lower()).to_dict(),
        )
        if not result:
            raise XMTPError(f"no conversation returned for {address}")
        return Conversation(self.client, result)


class Preferences:
    def __init__(self, client: "Client") -> None:
        self.client = client

    async def inbox_state_from_inbox_ids(
        self, inbox_ids: Iterable[str], refresh_from_network: bool = False
    ) -> list[InboxState]:
        result = await self.client.req(
            "preferences.inbox_state_from_inbox_ids",
            inbox_ids=list(inbox_ids),
            refresh_from_network=refresh_from_network,
        )
        return [
            InboxState(
                state["inboxId"],
                [Identifier.from_dict(i) for i in state.get("identifiers") or []],
            )
            for state in result or []
        ]


class Client:
    """
    An authenticated XMTP session held by the gateway.

    Build it with Client.create, not the constructor.
    """

    def __init__(
        self,
        gateway: Gateway,
        session_id: str,
        inbox_id: str,
        identifier: Identifier,
        env: str,
    ) -> None:
        self.gateway = gateway
        self.session_id = session_id
        self.inbox_id = inbox_id
        self.identifier = identifier
        self.env = env
        self.conversations = Conversations(self)
        self.preferences = Preferences(self)

    async def req(self, method: str, **params: Any) -> Any:
        return await self.gateway.req(method, session_id=self.session_id, **params)

    @classmethod
    async def create(
        cls,
        signer: SignerLike,
        db_encryption_key: bytes,
        env: str,
        db_path: Optional[str] = None,
        gateway: Optional[Gateway] = None,
    ) -> "Client":
        """
        Open (or resume) the signer's inbox on the gateway.

        A fresh installation needs its identity signed: the gateway hands back
        the text to sign and we register the signature.
        """
        gateway = gateway or Gateway()
        identifier = signer.get_identifier()
        result = await gateway.req(
            "client.create",
            identifier=identifier.to_dict(),
            signer_type=signer.type,
            env=env,
            db_path=db_path,
            db_encryption_key=db_encryption_key.hex(),
        )
        if not isinstance(result, dict) or not result.get("sessionId"):
            raise XMTPError("client.create didn't return a session")
        session_id = result["sessionId"]
        if result.get("signatureText"):
            logging.info("registering new installation for %s", identifier.identifier)
            signature = await signer.sign_message(result["signatureText"])
            registered = await gateway.req(
                "client.register", session_id=session_id, signature=signature.hex()
            )
            result = {**result, **(registered or {})}
        return cls(gateway, session_id, result.get("inboxId", ""), identifier, env)

    @staticmethod
    async def can_message(
        identifiers: list[Identifier], env: str, gateway: Optional[Gateway] = None
    ) -> dict[str, bool]:
        "network-wide reachability check, keyed by identifier"
        gateway = gateway or Gateway()
        result = await gateway.req(
            "client.can_message",
            identifiers=[i.to_dict() for i in identifiers],
            env=env,
        )
        return {str(k): bool(v) for k, v in (result or {}).items()}

    async def close(self) -> None:
        await self.req("client.close")

    def __repr__(self) -> str:
        return f"<Client {self.inbox_id} ({self.env})>"
