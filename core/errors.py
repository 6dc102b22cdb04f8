"""Exception taxonomy shared by the intake, gate and dispatcher."""

from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class ConfigError(RelayError):
    pass


class ValidationError(RelayError):
    """Bad command parameters. Always reported inline, never deferred."""

    def __init__(self, message: str, *, usage: Optional[str] = None):
        super().__init__(message)
        self.usage = usage

    def user_message(self) -> str:
        text = f"❌ {self}"
        if self.usage:
            text += f"\n\n{self.usage}"
        return text


class AuthenticityError(RelayError):
    """Missing or invalid webhook signature / secret."""


class PaymentVerificationError(RelayError):
    """Facilitator unreachable or returned an unusable answer."""


class WorkerError(RelayError):
    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DeliveryError(RelayError):
    """A platform post failed. Never surfaced as a payment failure."""


class UnknownTokenError(RelayError):
    """Token is expired, already consumed, or was never issued."""

    def __init__(self, token: str):
        super().__init__(f"unknown correlation token {token!r}")
        self.token = token


class DuplicateTokenError(RelayError):
    def __init__(self, token: str):
        super().__init__(f"correlation token {token!r} is already registered")
        self.token = token
