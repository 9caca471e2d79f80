from __future__ import annotations
from typing import List, Optional


class PortalError(Exception):
    """Base class; ``step`` names the operation that failed."""

    def __init__(self, message: str = "", *, step: Optional[str] = None):
        super().__init__(message)
        self.step = step

    def __str__(self) -> str:
        msg = super().__str__()
        return f"[{self.step}] {msg}" if self.step else msg


class InvalidBaseUrl(PortalError): pass
class InvalidCredential(PortalError): pass

class EndpointUnreachable(PortalError): pass


class NoReachableEndpoint(EndpointUnreachable):
    def __init__(self, message: str = "", *, attempts: Optional[List] = None, step: Optional[str] = "probe"):
        super().__init__(message, step=step)
        self.attempts = attempts or []


class HandshakeFailed(PortalError): pass
class TokenMissing(PortalError): pass
class AuthRejected(PortalError): pass
class EmptyCatalog(PortalError): pass
class UnrecognizedFormat(PortalError): pass
class StreamLinkUnavailable(PortalError): pass
class MalformedPlaylist(PortalError): pass
class SessionStateError(PortalError): pass
class ChannelNotFound(PortalError): pass


class TransportExhausted(PortalError):
    """Direct access and every proxy template failed."""

    def __init__(self, message: str = "", *, attempts: Optional[List] = None, step: Optional[str] = "transport"):
        super().__init__(message, step=step)
        self.attempts = attempts or []
