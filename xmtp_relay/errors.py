from typing import Optional


class RelayError(Exception):
    "base for everything raised by xmtp_relay"


class ConfigurationError(RelayError):
    pass


class SignerError(RelayError):
    pass


class ClientInitializationError(RelayError):
    pass


class XMTPError(RelayError):
    """
    Error returned by the XMTP gateway or raised while talking to it

    Attributes
    -----------
    code: Optional[int]
       JSON-RPC error code, if the gateway sent one
    """

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class CannotMessageError(RelayError):
    pass


class ConversationCreationError(RelayError):
    pass
