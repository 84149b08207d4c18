# utils/probes.py
import socket
import struct
import time
import logging
from enum import Enum

import dns.message

from utils.errors import ProbeTransportError

logger = logging.getLogger(__name__)


class Protocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"


class PortStatus(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"
    FILTERED = "Filtered"
    OPEN_FILTERED = "Open|Filtered"
    ERROR = "Error"


# ----------------------------------------------------------------------
# UDP probe payloads
# ----------------------------------------------------------------------
NTP_EPOCH_OFFSET = 2208988800

# SNMPv1 GetRequest, community "public", OID 1.3.6.1.2.1.1.1.0 (sysDescr.0)
SNMP_GET_REQUEST = (
    b"\x30\x26\x02\x01\x00\x04\x06public"
    b"\xa0\x19\x02\x01\x01\x02\x01\x00\x02\x01\x00"
    b"\x30\x0e\x30\x0c\x06\x08\x2b\x06\x01\x02\x01\x01\x01\x00\x05\x00"
)


def _dns_query() -> bytes:
    return dns.message.make_query("google.com", "A").to_wire()


def _ntp_client_packet() -> bytes:
    # LI=0, VN=4, Mode=3 (client), transmit timestamp in the last 8 bytes
    now = time.time() + NTP_EPOCH_OFFSET
    sec = int(now)
    frac = int((now - sec) * (1 << 32)) & 0xFFFFFFFF
    return b"\x23" + b"\x00" * 39 + struct.pack("!II", sec, frac)


UDP_PAYLOADS = {
    53: _dns_query,
    123: _ntp_client_packet,
    161: lambda: SNMP_GET_REQUEST,
}


def udp_payload(port: int) -> bytes:
    builder = UDP_PAYLOADS.get(port)
    return builder() if builder else b""


# ----------------------------------------------------------------------
# Probers: probe(host, port, timeout_ms) -> PortStatus
# ----------------------------------------------------------------------
def _open_socket(host: str, port: int, kind: int, protocol: Protocol) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        return socket.socket(family, kind)
    except OSError as e:
        raise ProbeTransportError(port, protocol.value, e) from e


def probe_tcp(host: str, port: int, timeout_ms: int) -> PortStatus:
    """
    Plain connect() probe. Open on handshake, Closed on refusal,
    Filtered on timeout or any other socket error.
    """
    with _open_socket(host, port, socket.SOCK_STREAM, Protocol.TCP) as sock:
        sock.settimeout(timeout_ms / 1000.0)
        try:
            sock.connect((host, port))
        except ConnectionRefusedError:
            return PortStatus.CLOSED
        except socket.timeout:
            return PortStatus.FILTERED
        except OSError as e:
            logger.debug(f"TCP {host}:{port} -> {e}")
            return PortStatus.FILTERED
        return PortStatus.OPEN


def probe_udp(host: str, port: int, timeout_ms: int) -> PortStatus:
    """
    Send one datagram and wait for any reply. The socket is connected so the
    kernel reports ICMP port-unreachable as ConnectionRefusedError.
    """
    with _open_socket(host, port, socket.SOCK_DGRAM, Protocol.UDP) as sock:
        sock.settimeout(timeout_ms / 1000.0)
        try:
            sock.connect((host, port))
            sock.send(udp_payload(port))
            sock.recv(4096)
        except ConnectionRefusedError:
            return PortStatus.CLOSED
        except socket.timeout:
            return PortStatus.OPEN_FILTERED
        except OSError as e:
            logger.debug(f"UDP {host}:{port} -> {e}")
            return PortStatus.FILTERED
        return PortStatus.OPEN


PROBERS = {
    Protocol.TCP: probe_tcp,
    Protocol.UDP: probe_udp,
}
