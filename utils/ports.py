# utils/ports.py
import logging
from collections import namedtuple
from typing import Dict, Iterable, List, Optional, Sequence

from utils.errors import ValidationError

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535

PortMetadata = namedtuple("PortMetadata", ["protocol", "port", "service", "description"])

# ----------------------------------------------------------------------
# Static well-known port table (presentation only)
# ----------------------------------------------------------------------
WELL_KNOWN_PORTS: Dict[str, Dict[int, tuple]] = {
    "TCP": {
        20: ("FTP-DATA", "File Transfer Protocol (Data)"),
        21: ("FTP", "File Transfer Protocol (Control)"),
        22: ("SSH", "Secure Shell"),
        23: ("Telnet", "Telnet protocol"),
        25: ("SMTP", "Simple Mail Transfer Protocol"),
        53: ("DNS", "Domain Name System"),
        80: ("HTTP", "Hypertext Transfer Protocol"),
        88: ("Kerberos", "Kerberos Authentication"),
        110: ("POP3", "Post Office Protocol v3"),
        143: ("IMAP", "Internet Message Access Protocol"),
        161: ("SNMP", "Simple Network Management Protocol"),
        162: ("SNMPTRAP", "SNMP Trap"),
        389: ("LDAP", "Lightweight Directory Access Protocol"),
        443: ("HTTPS", "HTTP over TLS/SSL"),
        465: ("SMTPS", "SMTP over TLS/SSL"),
        587: ("SUBMISSION", "Message Submission"),
        636: ("LDAPS", "LDAP over TLS/SSL"),
        853: ("DNS-TLS", "DNS over TLS"),
        993: ("IMAPS", "IMAP over TLS/SSL"),
        995: ("POP3S", "POP3 over TLS/SSL"),
        1433: ("MSSQL", "Microsoft SQL Server"),
        1935: ("RTMP", "Real-Time Messaging Protocol"),
        3306: ("MySQL", "MySQL Database"),
        3389: ("RDP", "Remote Desktop Protocol"),
        5353: ("mDNS", "Multicast DNS"),
        5432: ("PostgreSQL", "PostgreSQL Database"),
        5900: ("VNC", "Virtual Network Computing"),
        6379: ("Redis", "Redis Database"),
        27015: ("Source", "Source Engine Game Server"),
        27017: ("MongoDB", "MongoDB Database"),
    },
    "UDP": {
        53: ("DNS", "Domain Name System"),
        67: ("DHCP", "Dynamic Host Configuration Protocol (Server)"),
        68: ("DHCP", "Dynamic Host Configuration Protocol (Client)"),
        69: ("TFTP", "Trivial File Transfer Protocol"),
        123: ("NTP", "Network Time Protocol"),
        161: ("SNMP", "Simple Network Management Protocol"),
        162: ("SNMPTRAP", "SNMP Trap"),
        514: ("Syslog", "System Logging Protocol"),
    },
}

# Named groups offered by the UI's "well-known" scan mode.
PORT_GROUPS: Dict[str, List[int]] = {
    "HTTP/HTTPS": [80, 443],
    "Email": [25, 587, 465, 110, 995, 143, 993],
    "File Transfer": [20, 21, 22, 69],
    "Database": [1433, 3306, 5432, 27017, 6379],
}

# Service labels shown for group members that differ from the generic table.
_GROUP_LABELS = {
    22: ("SSH/SFTP", "Secure Shell/File Transfer"),
    69: ("TFTP", "Trivial File Transfer Protocol"),
    587: ("SMTP", "SMTP with STARTTLS"),
}


def describe_port(protocol: str, port: int) -> Optional[PortMetadata]:
    entry = WELL_KNOWN_PORTS.get(str(protocol).upper(), {}).get(port)
    if entry is None:
        return None
    return PortMetadata(str(protocol).upper(), port, *entry)


def list_port_groups() -> List[dict]:
    """Groups with per-port service info, in declaration order."""
    groups = []
    for name, ports in PORT_GROUPS.items():
        members = []
        for port in ports:
            service, description = _GROUP_LABELS.get(port) or WELL_KNOWN_PORTS["TCP"].get(port, ("Unknown", ""))
            members.append({"port": port, "service": service, "description": description})
        groups.append({"name": name, "ports": members})
    return groups


# ----------------------------------------------------------------------
# Port Set Builder
# ----------------------------------------------------------------------
def _as_port(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(field, "must be an integer")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field, f"'{value}' is not a valid port number")
    if isinstance(value, float) and value != port:
        raise ValidationError(field, f"'{value}' is not a valid port number")
    if not MIN_PORT <= port <= MAX_PORT:
        raise ValidationError(field, f"port {port} is outside {MIN_PORT}-{MAX_PORT}")
    return port


def resolve_groups(groups: Iterable[str]) -> List[int]:
    if not isinstance(groups, (list, tuple)):
        raise ValidationError("portGroups", "must be a list of group names")
    by_name = {name.lower(): ports for name, ports in PORT_GROUPS.items()}
    ports = set()
    for name in groups:
        members = by_name.get(str(name).strip().lower())
        if members is None:
            logger.warning(f"Unknown port group ignored: {name!r}")
            continue
        ports.update(members)
    if not ports:
        raise ValidationError("portGroups", "no known port group selected")
    return sorted(ports)


def build_port_set(
    port_range: Optional[Sequence] = None,
    port_list: Optional[Iterable] = None,
    groups: Optional[Iterable[str]] = None,
) -> List[int]:
    """
    Turn a range, an explicit list or named groups into an ascending list
    of distinct ports. Groups win over a list, a list wins over a range.
    """
    if groups:
        return resolve_groups(groups)

    if port_list is not None:
        if not isinstance(port_list, (list, tuple)):
            raise ValidationError("portList", "must be a list of port numbers")
        ports = {_as_port(p, "portList") for p in port_list}
        if not ports:
            raise ValidationError("portList", "at least one port is required")
        return sorted(ports)

    if port_range is None:
        raise ValidationError("portRange", "a port range, port list or port group is required")
    if not isinstance(port_range, (list, tuple)) or len(port_range) != 2:
        raise ValidationError("portRange", "must be [start, end]")

    start = _as_port(port_range[0], "startPort")
    end = _as_port(port_range[1], "endPort")
    if start > end:
        raise ValidationError("portRange", f"start port {start} is greater than end port {end}")
    return list(range(start, end + 1))
