import csv
import json
from io import StringIO

import pytest

from utils.errors import ValidationError
from utils.export import export_csv, export_json, export_results, result_rows, validate_results
from utils.portscan import ProbeOutcome, ScanSummary
from utils.probes import PortStatus, Protocol


@pytest.fixture
def summary():
    results = [
        ProbeOutcome(22, Protocol.TCP, PortStatus.OPEN),
        ProbeOutcome(53, Protocol.TCP, PortStatus.CLOSED),
        ProbeOutcome(53, Protocol.UDP, PortStatus.OPEN_FILTERED),
        ProbeOutcome(443, Protocol.TCP, PortStatus.FILTERED),
        ProbeOutcome(161, Protocol.UDP, PortStatus.CLOSED),
    ]
    return ScanSummary(total_scanned=5, open=1, closed=2, filtered=1, open_filtered=1, results=results)


def triples(rows):
    return sorted((proto, int(port), status) for proto, port, status in rows)


class TestCsvExport:

    def test_header_and_one_row_per_pair(self, summary):
        rows = list(csv.reader(StringIO(export_csv(summary))))
        assert rows[0] == ["Protocol", "Port", "Status"]
        assert len(rows) == 1 + 5

    def test_grouped_by_protocol_then_ascending_port(self, summary):
        rows = list(csv.reader(StringIO(export_csv(summary))))[1:]
        assert rows == [
            ["TCP", "22", "Open"],
            ["TCP", "53", "Closed"],
            ["TCP", "443", "Filtered"],
            ["UDP", "53", "Open|Filtered"],
            ["UDP", "161", "Closed"],
        ]

    def test_raw_map_with_string_ports(self):
        raw = {"UDP": {"123": "Open"}, "TCP": {"8080": "Closed", "80": "Open"}}
        text = export_results(raw, "csv")
        assert text.splitlines() == ["Protocol,Port,Status", "TCP,80,Open", "TCP,8080,Closed", "UDP,123,Open"]


class TestJsonExport:

    def test_summary_round_trip(self, summary):
        document = json.loads(export_json(summary))
        assert document["totalScanned"] == 5
        parsed = [(r["protocol"], r["port"], r["status"]) for r in document["results"]]
        assert triples(parsed) == triples(result_rows(summary))

    def test_summary_dict_and_raw_map_agree(self, summary):
        from_dict = result_rows(json.loads(export_json(summary)))
        from_map = result_rows(json.loads(export_json(summary.by_protocol())))
        assert from_dict == from_map == result_rows(summary)

    def test_unknown_format(self, summary):
        with pytest.raises(ValidationError):
            export_results(summary, "XML")


class TestValidateResults:

    def test_normalises_ports(self):
        assert validate_results({"TCP": {"80": "Open"}}) == {"TCP": {80: "Open"}}

    @pytest.mark.parametrize("payload", [
        None,
        {"ICMP": {}},
        {"TCP": ["80"]},
        {"TCP": {"http": "Open"}},
        {"TCP": {"70000": "Open"}},
        {"TCP": {"80": "Maybe"}},
        {"TCP": {"80": ["Open"]}},
    ])
    def test_rejects_bad_payloads(self, payload):
        with pytest.raises(ValidationError) as exc:
            validate_results(payload)
        assert exc.value.field == "results"
