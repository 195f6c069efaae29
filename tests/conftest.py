"""Shared fixtures: canned occtl output and a transport that replays it."""

import json

import pytest

from ocserv_exporter import CommandTransport, ProgramLogger, TransportError


STATUS = {
    "Status": "online",
    "Server PID": 1121,
    "Sec-mod PID": 1123,
    "Up since": "2024-05-01 09:00",
    "raw_up_since": 1714554000,
    "uptime": 86400,
    "Active sessions": 3,
    "Total sessions": 120,
    "Total authentication failures": 7,
    "IPs in ban list": 2,
    "Median latency": "<1ms",
    "raw_median_latency": 0,
    "Sessions handled": 40,
    "Timed out sessions": 4,
    "Timed out (idle) sessions": 5,
    "Closed due to error sessions": 1,
    "Authentication failures": 3,
    "Average auth time": "    2s",
    "raw_avg_auth_time": 2,
    "Max auth time": "    9s",
    "raw_max_auth_time": 9,
    "Average session time": "  1h:00m",
    "raw_avg_session_time": 3600,
    "Max session time": "  3h:00m",
    "raw_max_session_time": 10800,
    "TX": "1.2 MB",
    "raw_tx": 1234567,
    "RX": "3.4 MB",
    "raw_rx": 3456789,
}


def make_user(**overrides):
    user = {
        "ID": 501,
        "Username": "alice",
        "Groupname": "(none)",
        "State": "connected",
        "vhost": "default",
        "Device": "vpns0",
        "MTU": "1434",
        "Remote IP": "198.51.100.10",
        "Location": "unknown",
        "Local Device IP": "203.0.113.1",
        "IPv4": "10.10.0.2",
        "P-t-P IPv4": "10.10.0.1",
        "IPv6": "fd00::2",
        "User-Agent": "AnyConnect Linux 4.10",
        "RX": "2048",
        "TX": "4096",
        "_RX": "2.0 KB",
        "_TX": "4.0 KB",
        "Connected at": " 1h:02m",
        "_Connected at": "2024-05-02 08:00",
        "raw_connected_at": 1714636800,
    }
    user.update(overrides)
    return user


USERS = [
    make_user(),
    make_user(ID=502, Username="bob", Device="vpns1", **{
        "Remote IP": "198.51.100.20", "IPv4": "10.10.0.3", "IPv6": "fd00::3",
        "RX": "100", "TX": "200", "raw_connected_at": 1714640000,
    }),
]


def encode(payload) -> bytes:
    return json.dumps(payload).encode()


class CannedTransport(CommandTransport):
    """Replays queued responses per command. Exceptions in the queue are raised."""

    def __init__(self, **responses):
        self.responses = {name: list(values) for name, values in responses.items()}
        self.calls = []

    def queue(self, command, *values):
        self.responses.setdefault(command, []).extend(values)

    async def execute(self, command):
        self.calls.append(command)
        queued = self.responses.get(command)
        if not queued:
            raise TransportError(f"no canned output for {command}")
        value = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def logger():
    log = ProgramLogger.VerboseLogger("ocserv_exporter.tests")
    log.setLevel(ProgramLogger.VERBOSE_LEVEL)
    return log


def sample_count(registry, metric_name):
    """Number of exposed samples for a metric family."""
    for family in registry.collect():
        if family.name == metric_name:
            return len(family.samples)
    return 0
