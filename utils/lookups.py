# utils/lookups.py
import re
import logging
import ipaddress
from typing import Any, Dict, Optional

import dns.exception
import dns.resolver
import dns.reversename
import whois
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.errors import LookupFailed, ValidationError

logger = logging.getLogger(__name__)

DNS_SERVERS = {
    "google": "8.8.8.8",
    "cloudflare": "1.1.1.1",
    "opendns": "208.67.222.222",
}

RECORD_TYPES = ["A", "AAAA", "CNAME", "MX", "TXT", "NS", "SOA", "PTR"]

DOMAIN_RE = re.compile(r"^([a-zA-Z0-9-]+\.)*[a-zA-Z0-9-]+\.[a-zA-Z]{2,}\.?$")


def clean_text(value, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(field, "must be a string")
    return value.strip()


def is_ip_address(value) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


# ----------------------------------------------------------------------
# DNS
# ----------------------------------------------------------------------
def make_resolver(server: Optional[str] = None, lifetime: float = 5.0) -> dns.resolver.Resolver:
    """
    A fresh resolver per lookup. A named or literal server is set on this
    resolver only, never on the process-wide default.
    """
    server = clean_text(server, "server")
    if server:
        nameserver = DNS_SERVERS.get(server.lower(), server)
        if not is_ip_address(nameserver):
            raise ValidationError("server", f"unknown DNS server '{server}'")
        resolver = dns.resolver.Resolver(configure=False)
        resolver.nameservers = [nameserver]
    else:
        resolver = dns.resolver.Resolver()
    resolver.lifetime = lifetime
    return resolver


@retry(stop=stop_after_attempt(2), wait=wait_exponential(multiplier=1, min=1, max=3),
       retry=retry_if_exception_type((dns.exception.Timeout, dns.resolver.NoNameservers)), reraise=True)
def _resolve(resolver, qname, record_type):
    return resolver.resolve(qname, record_type, raise_on_no_answer=False)


def dns_lookup(domain: str, record_type: str = "A", server: Optional[str] = None) -> Dict[str, Any]:
    domain = clean_text(domain, "domain")
    record_type = (clean_text(record_type, "recordType") or "A").upper()
    if record_type not in RECORD_TYPES:
        raise ValidationError("recordType", f"unsupported record type '{record_type}'")
    if not domain:
        raise ValidationError("domain", "domain is required")

    if record_type == "PTR" and is_ip_address(domain):
        qname = dns.reversename.from_address(domain)
    elif DOMAIN_RE.match(domain):
        qname = domain
    else:
        raise ValidationError("domain", f"'{domain}' is not a valid domain")

    resolver = make_resolver(server)
    result = {"domain": domain, "recordType": record_type, "server": server or "Default", "records": []}
    try:
        answers = _resolve(resolver, qname, record_type)
        result["records"] = [str(r).rstrip(".") for r in answers]
    except dns.resolver.NXDOMAIN:
        logger.debug(f"DNS {record_type} for {domain}: NXDOMAIN")
    except dns.exception.DNSException as e:
        logger.error(f"DNS {record_type} lookup for {domain} failed: {e}")
        raise LookupFailed(f"DNS lookup failed: {e}") from e

    if not result["records"]:
        result["info"] = f"No {record_type} records found"
    logger.debug(f"DNS {record_type} for {domain}: {result['records']}")
    return result


# ----------------------------------------------------------------------
# WHOIS
# ----------------------------------------------------------------------
@retry(stop=stop_after_attempt(2), wait=wait_exponential(multiplier=1, min=1, max=3), reraise=True)
def _whois(query):
    return whois.whois(query)


def whois_lookup(query: str) -> Dict[str, Any]:
    query = clean_text(query, "domain")
    if not query:
        raise ValidationError("domain", "domain or IP is required")
    if not (is_ip_address(query) or DOMAIN_RE.match(query)):
        raise ValidationError("domain", f"'{query}' is not a valid domain or IP")
    try:
        w = _whois(query)
    except Exception as e:
        logger.error(f"WHOIS lookup for {query} failed: {e}")
        raise LookupFailed(f"WHOIS error: {e}") from e
    return {"query": query, "data": getattr(w, "text", None) or str(w)}


# ----------------------------------------------------------------------
# Subnet calculator (IPv4)
# ----------------------------------------------------------------------
def _prefix_from_mask(mask: str) -> int:
    mask = mask.strip()
    try:
        if mask.startswith("/"):
            prefix = int(mask[1:])
        elif "." in mask:
            prefix = ipaddress.IPv4Network(f"0.0.0.0/{mask}").prefixlen
        else:
            prefix = int(mask)
    except ValueError:
        raise ValidationError("mask", f"'{mask}' is not a valid netmask or prefix")
    if not 0 <= prefix <= 32:
        raise ValidationError("mask", f"prefix /{prefix} is out of range")
    return prefix


def calculate_subnet(address: str, mask: str) -> Dict[str, Any]:
    address = clean_text(address, "networkAddress")
    try:
        ipaddress.IPv4Address(address)
    except ValueError:
        raise ValidationError("networkAddress", f"'{address}' is not a valid IPv4 address")
    prefix = _prefix_from_mask(str(mask or ""))
    net = ipaddress.IPv4Network(f"{address}/{prefix}", strict=False)

    if prefix >= 31:
        # /31 point-to-point and /32 host routes have no network/broadcast reservation
        first, last, hosts = net.network_address, net.broadcast_address, net.num_addresses
    else:
        first, last, hosts = net.network_address + 1, net.broadcast_address - 1, net.num_addresses - 2

    return {
        "networkAddress": str(net.network_address),
        "broadcastAddress": str(net.broadcast_address),
        "firstUsableIP": str(first),
        "lastUsableIP": str(last),
        "numHosts": hosts,
        "netmask": str(net.netmask),
        "subnetMask": prefix,
    }
