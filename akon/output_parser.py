"""Pattern-based parsing of OpenConnect output into connection events."""

from __future__ import annotations

import ipaddress
import re

from akon.events import (
    Authenticating,
    AuthenticationFailed,
    Connected,
    ConnectionEvent,
    ConnectionFailed,
    ErrorEvent,
    F5SessionEstablished,
    NetworkError,
    TunConfigured,
    UnknownOutput,
)

__all__ = ["OutputParser"]

_TUN_CONFIGURED = re.compile(r"(?:Connected\s+(\w+)\s+as|Configured as)\s+(\S+)")
_ESTABLISHED = re.compile(r"Established connection|SSL connected|with SSL connected")
_AUTH_FAILED = re.compile(r"Failed to authenticate")
_POST = re.compile(r"POST\s+https?://")
_CONNECT_RESPONSE = re.compile(r"Got CONNECT response")
_F5_SESSION = re.compile(r"Connected to F5 Session Manager")
_SSL_ERROR = re.compile(r"SSL|TLS|connection failure|handshake", re.IGNORECASE)
_CERT_ERROR = re.compile(r"certificate|cert.*invalid|verification failed", re.IGNORECASE)
_TUN_ERROR = re.compile(r"failed to open tun|tun.*error|no tun device", re.IGNORECASE)
_DNS_ERROR = re.compile(
    r"cannot resolve|unknown host|name resolution|getaddrinfo failed|Name or service not known",
    re.IGNORECASE,
)

_DEFAULT_DEVICE = "tun"


class OutputParser:
    """Turns lines of OpenConnect stdout and stderr into events."""

    def parse_line(self, line: str) -> ConnectionEvent:
        """Classify one line of standard output."""
        match = _TUN_CONFIGURED.search(line)
        if match:
            device = match.group(1) or _DEFAULT_DEVICE
            ip_text = (match.group(2) or match.group(1) or "").rstrip(",").strip()
            try:
                ip = ipaddress.ip_address(ip_text)
            except ValueError:
                pass
            else:
                if "SSL connected" in line or "DTLS" in line:
                    return Connected(ip=ip, device=device)
                return TunConfigured(device=device, ip=ip)

        if _AUTH_FAILED.search(line):
            return ErrorEvent(kind=AuthenticationFailed(), raw_output=line)
        if _POST.search(line):
            return Authenticating(message="Authenticating with server...")
        if _CONNECT_RESPONSE.search(line):
            return Authenticating(message="Received server response")
        if _F5_SESSION.search(line):
            return F5SessionEstablished(session_token=None)
        if _ESTABLISHED.search(line):
            return Authenticating(message="Establishing connection...")
        return UnknownOutput(line=line)

    def parse_error(self, line: str) -> ConnectionEvent:
        """Classify one line of standard error."""
        if _AUTH_FAILED.search(line):
            return ErrorEvent(kind=AuthenticationFailed(), raw_output=line)
        if _SSL_ERROR.search(line):
            return ErrorEvent(kind=NetworkError("SSL/TLS connection failure"), raw_output=line)
        if _CERT_ERROR.search(line):
            return ErrorEvent(kind=NetworkError("Certificate validation failed"), raw_output=line)
        if _TUN_ERROR.search(line):
            return ErrorEvent(
                kind=ConnectionFailed("Failed to open TUN device - try running with sudo"),
                raw_output=line,
            )
        if _DNS_ERROR.search(line):
            return ErrorEvent(
                kind=NetworkError("DNS resolution failed - check server address"),
                raw_output=line,
            )
        return UnknownOutput(line=line)