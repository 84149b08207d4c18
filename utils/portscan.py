# utils/portscan.py
import time
import logging
import ipaddress
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from utils.errors import ProbeTransportError, StreamTransportError, ValidationError
from utils.ports import build_port_set, describe_port
from utils.probes import PROBERS, PortStatus, Protocol

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
DEFAULT_TIMEOUT_MS = 1000
MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 10000
EXPORT_FORMATS = ("JSON", "CSV")

PROTOCOL_SELECTORS = {
    "TCP": (Protocol.TCP,),
    "UDP": (Protocol.UDP,),
    "BOTH": (Protocol.TCP, Protocol.UDP),
}

SCANNING = "scanning"
COMPLETED = "completed"


# ----------------------------------------------------------------------
# Models
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ScanRequest:
    target_ip: str
    ports: Tuple[int, ...]
    protocols: Tuple[Protocol, ...]
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    export_format: Optional[str] = None


@dataclass(frozen=True)
class ProbeOutcome:
    port: int
    protocol: Protocol
    status: PortStatus

    def to_dict(self) -> Dict[str, Any]:
        row = {"port": self.port, "protocol": self.protocol.value, "status": self.status.value}
        meta = describe_port(self.protocol.value, self.port)
        if meta:
            row["service"] = meta.service
            row["description"] = meta.description
        return row


@dataclass
class ScanSummary:
    total_scanned: int = 0
    open: int = 0
    closed: int = 0
    filtered: int = 0
    open_filtered: int = 0
    errors: int = 0
    results: List[ProbeOutcome] = field(default_factory=list)
    cancelled: bool = False

    def by_protocol(self) -> Dict[str, Dict[int, str]]:
        maps: Dict[str, Dict[int, str]] = {}
        for outcome in self.results:
            maps.setdefault(outcome.protocol.value, {})[outcome.port] = outcome.status.value
        return maps

    def to_dict(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "totalScanned": self.total_scanned,
            "openPorts": self.open,
            "closedPorts": self.closed,
            "filteredPorts": self.filtered,
            "openFilteredPorts": self.open_filtered,
            "errorPorts": self.errors,
            "cancelled": self.cancelled,
            "results": [o.to_dict() for o in self.results],
        }
        document.update(self.by_protocol())
        return document


@dataclass(frozen=True)
class ScanProgress:
    scanned: int
    total: int
    percentage: int
    current_port: int
    status: str
    results: Dict[str, Dict[int, str]]
    summary: Optional[ScanSummary] = None

    def to_event(self) -> Dict[str, Any]:
        event = {
            "progress": {
                "scanned": self.scanned,
                "total": self.total,
                "percentage": self.percentage,
                "currentPort": self.current_port,
                "status": self.status,
            },
            "results": self.results,
        }
        if self.summary is not None:
            event["summary"] = self.summary.to_dict()
        return event


# ----------------------------------------------------------------------
# Request validation
# ----------------------------------------------------------------------
def validate_target(target_ip, allow_private: bool = True) -> str:
    if not target_ip or not isinstance(target_ip, str):
        raise ValidationError("targetIp", "target IP is required")
    try:
        ip_obj = ipaddress.ip_address(target_ip.strip())
    except ValueError:
        raise ValidationError("targetIp", f"'{target_ip}' is not a valid IP address")
    if not allow_private and (ip_obj.is_private or ip_obj.is_loopback or ip_obj.is_reserved):
        raise ValidationError("targetIp", "private/reserved IPs not allowed")
    return str(ip_obj)


def _validate_timeout(timeout, default: int = DEFAULT_TIMEOUT_MS) -> int:
    if timeout is None or timeout == "":
        return default
    if isinstance(timeout, bool):
        raise ValidationError("timeout", "must be an integer number of milliseconds")
    try:
        timeout_ms = int(timeout)
    except (TypeError, ValueError):
        raise ValidationError("timeout", f"'{timeout}' is not an integer")
    if not MIN_TIMEOUT_MS <= timeout_ms <= MAX_TIMEOUT_MS:
        raise ValidationError("timeout", f"must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms")
    return timeout_ms


def validate_export_format(export_format, field: str = "exportFormat") -> Optional[str]:
    if export_format is None or export_format == "":
        return None
    fmt = str(export_format).strip().upper()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(field, f"unsupported format '{export_format}'")
    return fmt


def build_scan_request(
    target_ip,
    port_range: Optional[Sequence] = None,
    port_list: Optional[Iterable] = None,
    groups: Optional[Iterable[str]] = None,
    protocol="TCP",
    timeout=None,
    export_format=None,
    allow_private: bool = True,
    default_timeout: int = DEFAULT_TIMEOUT_MS,
) -> ScanRequest:
    """
    Validate raw request fields and resolve the port set.
    Raises ValidationError naming the first offending field.
    """
    target = validate_target(target_ip, allow_private=allow_private)
    protocols = PROTOCOL_SELECTORS.get(str(protocol or "").strip().upper())
    if protocols is None:
        raise ValidationError("protocol", f"unsupported protocol '{protocol}'")
    ports = build_port_set(port_range=port_range, port_list=port_list, groups=groups)
    return ScanRequest(
        target_ip=target,
        ports=tuple(ports),
        protocols=protocols,
        timeout_ms=_validate_timeout(timeout, default_timeout),
        export_format=validate_export_format(export_format),
    )


# ----------------------------------------------------------------------
# Result Aggregator
# ----------------------------------------------------------------------
_COUNTERS = {
    PortStatus.OPEN: "open",
    PortStatus.CLOSED: "closed",
    PortStatus.FILTERED: "filtered",
    PortStatus.OPEN_FILTERED: "open_filtered",
    PortStatus.ERROR: "errors",
}

_PROTOCOL_ORDER = {Protocol.TCP: 0, Protocol.UDP: 1}


class ResultAggregator:
    """Owned by the scheduler thread; probes never touch it."""

    def __init__(self, protocols: Sequence[Protocol]):
        self._maps: Dict[Protocol, Dict[int, PortStatus]] = {p: {} for p in protocols}
        self._outcomes: List[ProbeOutcome] = []

    def add_batch(self, outcomes: Iterable[ProbeOutcome]):
        # batches arrive in ascending port order, so sorting each batch keeps the whole list sorted
        batch = sorted(outcomes, key=lambda o: (o.port, _PROTOCOL_ORDER[o.protocol]))
        for outcome in batch:
            self._maps[outcome.protocol][outcome.port] = outcome.status
        self._outcomes.extend(batch)

    def snapshot(self) -> Dict[str, Dict[int, str]]:
        return {
            proto.value: {port: status.value for port, status in sorted(statuses.items())}
            for proto, statuses in self._maps.items()
        }

    def freeze(self, cancelled: bool = False) -> ScanSummary:
        summary = ScanSummary(total_scanned=len(self._outcomes), results=list(self._outcomes), cancelled=cancelled)
        for outcome in self._outcomes:
            counter = _COUNTERS[outcome.status]
            setattr(summary, counter, getattr(summary, counter) + 1)
        return summary


# ----------------------------------------------------------------------
# Batch Scheduler + Progress Emitter
# ----------------------------------------------------------------------
def progress_percentage(scanned: int, total: int) -> int:
    # floored, so only the terminal record can report 100
    if total <= 0:
        return 100
    return min(100, scanned * 100 // total)


class PortScan:
    """
    One scan of one target. Iterating yields a ScanProgress after every
    batch; the last one is marked completed and carries the summary.
    """

    def __init__(self, request: ScanRequest, batch_size: int = BATCH_SIZE,
                 cancel_event: Optional[threading.Event] = None,
                 probers: Optional[Dict[Protocol, Callable]] = None):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.request = request
        self.batch_size = batch_size
        self.cancel_event = cancel_event or threading.Event()
        self.probers = probers or PROBERS
        self.scanned = 0
        self._aggregator = ResultAggregator(request.protocols)

    @property
    def total(self) -> int:
        return len(self.request.ports)

    @property
    def finished(self) -> bool:
        return self.scanned == self.total

    def cancel(self):
        self.cancel_event.set()

    def batches(self) -> Iterator[Tuple[int, ...]]:
        ports = self.request.ports
        for offset in range(0, len(ports), self.batch_size):
            yield ports[offset:offset + self.batch_size]

    def summary(self) -> ScanSummary:
        return self._aggregator.freeze(cancelled=not self.finished)

    def _run_batch(self, executor: ThreadPoolExecutor, batch: Sequence[int]) -> List[ProbeOutcome]:
        req = self.request
        futures = {
            executor.submit(self.probers[proto], req.target_ip, port, req.timeout_ms): (port, proto)
            for port in batch
            for proto in req.protocols
        }
        outcomes = []
        for fut in as_completed(futures):
            port, proto = futures[fut]
            try:
                status = PortStatus(fut.result())
            except ProbeTransportError as e:
                logger.debug(f"Probe error: {e}")
                status = PortStatus.ERROR
            except Exception as e:
                logger.debug(f"{proto.value} port {port}: unexpected probe failure: {e}")
                status = PortStatus.ERROR
            outcomes.append(ProbeOutcome(port, proto, status))
        return outcomes

    def __iter__(self) -> Iterator[ScanProgress]:
        req = self.request
        protocols = "/".join(p.value for p in req.protocols)
        workers = max(1, min(self.batch_size, self.total) * len(req.protocols))
        logger.info(f"Scanning {req.target_ip}: {self.total} ports ({protocols}), batch size {self.batch_size}")
        start = time.monotonic()

        with ThreadPoolExecutor(max_workers=workers) as exe:
            for batch in self.batches():
                if self.cancel_event.is_set():
                    logger.warning(f"Scan of {req.target_ip} cancelled after {self.scanned}/{self.total} ports")
                    return
                self._aggregator.add_batch(self._run_batch(exe, batch))
                self.scanned += len(batch)
                logger.debug(f"Batch {batch[0]}-{batch[-1]} done: {self.scanned}/{self.total}")

                done = self.finished
                yield ScanProgress(
                    scanned=self.scanned,
                    total=self.total,
                    percentage=progress_percentage(self.scanned, self.total),
                    current_port=batch[-1],
                    status=COMPLETED if done else SCANNING,
                    results=self._aggregator.snapshot(),
                    summary=self.summary() if done else None,
                )

        logger.info(f"Scan of {req.target_ip} completed in {round(time.monotonic() - start, 3)}s")


def iter_scan(request: ScanRequest, batch_size: int = BATCH_SIZE,
              cancel_event: Optional[threading.Event] = None) -> Iterator[ScanProgress]:
    return iter(PortScan(request, batch_size=batch_size, cancel_event=cancel_event))


# ----------------------------------------------------------------------
# Public function: scan ports
# ----------------------------------------------------------------------
def scan_ports(request: ScanRequest,
               on_progress: Optional[Callable[[ScanProgress], None]] = None,
               batch_size: int = BATCH_SIZE,
               cancel_event: Optional[threading.Event] = None,
               probers: Optional[Dict[Protocol, Callable]] = None) -> ScanSummary:
    """
    Run a scan to completion (or cancellation) and return its summary.
    If *on_progress* raises StreamTransportError the scan stops and the
    error propagates.
    """
    scan = PortScan(request, batch_size=batch_size, cancel_event=cancel_event, probers=probers)
    progress_iter = iter(scan)
    try:
        for progress in progress_iter:
            if on_progress is None:
                continue
            try:
                on_progress(progress)
            except StreamTransportError:
                logger.warning(f"Progress consumer for {request.target_ip} went away, cancelling scan")
                scan.cancel()
                raise
    finally:
        progress_iter.close()
    return scan.summary()
