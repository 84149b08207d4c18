# utils/errors.py
from typing import Optional


class NetDiagError(Exception):
    """Base class for every error raised by the diagnostics helpers."""


class ValidationError(NetDiagError):
    """
    A request field is missing, malformed or out of range.
    Raised before any socket is opened.
    """

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

    def to_dict(self):
        return {"error": self.message, "field": self.field}


class ProbeTransportError(NetDiagError):
    """A single probe could not run at all (e.g. no socket could be created)."""

    def __init__(self, port: int, protocol: str, cause: Optional[BaseException] = None):
        super().__init__(f"{protocol} probe on port {port} failed: {cause}")
        self.port = port
        self.protocol = protocol
        self.cause = cause


class StreamTransportError(NetDiagError):
    """The consumer of progress records went away."""


class LookupFailed(NetDiagError):
    """A DNS or WHOIS lookup failed after retries."""
