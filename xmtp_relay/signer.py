#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import asyncio
import logging
from typing import Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from xmtp_relay.errors import SignerError
from xmtp_relay.network import Identifier, IdentifierKind


def sanitize_key(key: str) -> str:
    key = key.strip()
    return key if key.startswith("0x") else f"0x{key}"


class Signer:
    """
    Externally owned account signer, in the shape the XMTP client wants:
    an identifier and an async signMessage that returns raw signature bytes
    """

    type = "EOA"

    def __init__(self, account: LocalAccount) -> None:
        self.account = account

    @property
    def address(self) -> str:
        return self.account.address.lower()

    def get_identifier(self) -> Identifier:
        return Identifier(self.address, IdentifierKind.ETHEREUM)

    def _sign(self, message: Union[str, bytes]) -> bytes:
        if isinstance(message, str):
            signable = encode_defunct(text=message)
        else:
            signable = encode_defunct(primitive=message)
        return bytes(self.account.sign_message(signable).signature)

    async def sign_message(self, message: Union[str, bytes]) -> bytes:
        "EIP-191 personal_sign, off the event loop"
        try:
            return await asyncio.to_thread(self._sign, message)
        except (TypeError, ValueError) as e:
            raise SignerError(f"couldn't sign message: {e}") from e

    def __repr__(self) -> str:
        return f"<Signer {self.type} {self.address}>"


def create_signer(key: str) -> Signer:
    try:
        account = Account.from_key(sanitize_key(key))
    except Exception as e:  # pylint: disable=broad-except
        # eth_keys raises its own ValidationError for bad lengths; don't log the key
        raise SignerError("invalid private key") from e
    logging.debug("signer address: %s", account.address.lower())
    return Signer(account)
