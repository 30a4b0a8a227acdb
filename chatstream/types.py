"""Error codes and the exception hierarchy shared by every layer."""

from __future__ import annotations


class ErrorCode:
    DECODE_ERROR = "decode_error"
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    STATE_ERROR = "state_error"
    CONFIGURATION_ERROR = "configuration_error"
    DATA_FORMAT_ERROR = "data_format_error"
    CANCELLED = "cancelled"


class ChatStreamError(Exception):
    """Structured error carrying a machine-readable ``code``."""

    default_code = ""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code or self.default_code


class DecodeError(ChatStreamError):
    """A wire record could not be normalized.  Recovered by skipping it."""

    default_code = ErrorCode.DECODE_ERROR


class TransportError(ChatStreamError):
    """Network or HTTP-level failure of a streaming request."""

    default_code = ErrorCode.TRANSPORT_ERROR

    def __init__(
        self,
        message: str,
        code: str = "",
        status_code: int | None = None,
    ):
        super().__init__(message, code)
        self.status_code = status_code


class TransportTimeout(TransportError):
    """No time-bounded reply arrived from the provider."""

    default_code = ErrorCode.TIMEOUT


class ProtocolError(ChatStreamError):
    """The top-level response is unusable (e.g. no stream body)."""

    default_code = ErrorCode.PROTOCOL_ERROR


class StateError(ChatStreamError):
    """An event handler failed or an operation is illegal in this state."""

    default_code = ErrorCode.STATE_ERROR


class ConfigurationError(ChatStreamError):
    """Unknown provider identifier or unusable configuration."""

    default_code = ErrorCode.CONFIGURATION_ERROR


class DataFormatError(ChatStreamError):
    """An imported snapshot does not have the expected shape."""

    default_code = ErrorCode.DATA_FORMAT_ERROR
