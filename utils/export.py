# utils/export.py
import csv
import json
from io import StringIO
from typing import Any, Dict, List, Mapping, Tuple, Union

from utils.errors import ValidationError
from utils.ports import MAX_PORT, MIN_PORT
from utils.portscan import EXPORT_FORMATS, ScanSummary
from utils.probes import PortStatus, Protocol

CSV_HEADER = ["Protocol", "Port", "Status"]

MIME_TYPES = {
    "JSON": "application/json",
    "CSV": "text/csv",
}

ResultsLike = Union[ScanSummary, Mapping[str, Any]]


def validate_results(results) -> Dict[str, Dict[int, str]]:
    """
    Check a raw {TCP?: {port: status}, UDP?: {port: status}} map coming
    from a client and normalise port keys to int.
    """
    if not isinstance(results, Mapping):
        raise ValidationError("results", "must be an object keyed by protocol")
    known = {p.value for p in Protocol}
    statuses = {s.value for s in PortStatus}
    clean: Dict[str, Dict[int, str]] = {}
    for proto, ports in results.items():
        if proto not in known:
            raise ValidationError("results", f"unknown protocol '{proto}'")
        if not isinstance(ports, Mapping):
            raise ValidationError("results", f"{proto} results must map port to status")
        clean[proto] = {}
        for port, status in ports.items():
            try:
                port_num = int(port)
            except (TypeError, ValueError):
                raise ValidationError("results", f"'{port}' is not a port number")
            if not MIN_PORT <= port_num <= MAX_PORT:
                raise ValidationError("results", f"port {port_num} out of range")
            if not isinstance(status, str) or status not in statuses:
                raise ValidationError("results", f"unknown status '{status}' for {proto}/{port_num}")
            clean[proto][port_num] = status
    return clean


def result_rows(results: ResultsLike) -> List[Tuple[str, int, str]]:
    """(protocol, port, status) triples, TCP group first, ports ascending."""
    if isinstance(results, ScanSummary):
        maps = results.by_protocol()
    elif isinstance(results.get("results"), list):
        maps = {}
        for row in results["results"]:
            maps.setdefault(row["protocol"], {})[int(row["port"])] = row["status"]
    else:
        maps = {proto: {int(port): status for port, status in ports.items()} for proto, ports in results.items()}

    rows = []
    for proto in [p.value for p in Protocol]:
        for port, status in sorted(maps.get(proto, {}).items()):
            rows.append((proto, port, status))
    return rows


def export_json(results: ResultsLike) -> str:
    document = results.to_dict() if isinstance(results, ScanSummary) else results
    return json.dumps(document, indent=2)


def export_csv(results: ResultsLike) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in result_rows(results):
        writer.writerow(row)
    return output.getvalue()


def export_results(results: ResultsLike, fmt: str) -> str:
    fmt = str(fmt).upper()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError("format", f"unsupported format '{fmt}'")
    if fmt == "JSON":
        return export_json(results)
    return export_csv(results)
