from .catalog import Catalog
from .engine import Engine
from .errors import (AuthRejected, ChannelNotFound, EmptyCatalog, EndpointUnreachable,
                     HandshakeFailed, InvalidBaseUrl, InvalidCredential, MalformedPlaylist,
                     NoReachableEndpoint, PortalError, SessionStateError, StreamLinkUnavailable,
                     TokenMissing, TransportExhausted, UnrecognizedFormat)
from .models import Channel, Credential, StreamKind, StreamRef
from .normalize import normalize
from .playlist import dump, parse
from .prober import EndpointProber
from .session import PortalSession, State
from .transport import TransportResolver

__version__ = "0.1.0"

__all__ = [
    "Catalog", "Channel", "Credential", "Engine", "EndpointProber", "PortalSession",
    "State", "StreamKind", "StreamRef", "TransportResolver", "dump", "normalize", "parse",
    "AuthRejected", "ChannelNotFound", "EmptyCatalog", "EndpointUnreachable", "HandshakeFailed",
    "InvalidBaseUrl", "InvalidCredential", "MalformedPlaylist", "NoReachableEndpoint",
    "PortalError", "SessionStateError", "StreamLinkUnavailable", "TokenMissing",
    "TransportExhausted", "UnrecognizedFormat",
]
