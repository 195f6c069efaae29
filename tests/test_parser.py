"""Tests for decoding occtl JSON output."""

import json

import pytest

from ocserv_exporter import DecodeError, parse_sessions, parse_status

from conftest import STATUS, USERS, encode, make_user


def test_parse_status_maps_every_field():
    status = parse_status(encode(STATUS))

    assert status.start_time == 1714554000
    assert status.active_sessions == 3
    assert status.handled_sessions == 120
    assert status.ips_banned == 2
    assert status.total_authentication_failures == 7
    assert status.sessions_handled == 40
    assert status.timed_out_sessions == 4
    assert status.timed_out_idle_sessions == 5
    assert status.closed_error_sessions == 1
    assert status.authentication_failures == 3
    assert status.average_auth_time == 2
    assert status.max_auth_time == 9
    assert status.average_session_time == 3600
    assert status.max_session_time == 10800
    assert status.tx_bytes == 1234567
    assert status.rx_bytes == 3456789
    assert status.status == "online"
    assert status.server_pid == 1121
    assert status.sec_mod_pid == 1123


def test_parse_status_accepts_numeric_strings():
    payload = dict(STATUS, raw_tx="999", **{"Active sessions": " 12 "})
    status = parse_status(encode(payload))
    assert status.tx_bytes == 999
    assert status.active_sessions == 12


def test_parse_status_informational_fields_are_optional():
    payload = {k: v for k, v in STATUS.items() if k not in ("Status", "Server PID", "Sec-mod PID")}
    status = parse_status(encode(payload))
    assert status.status == ""
    assert status.server_pid is None


def test_parse_status_missing_key():
    payload = dict(STATUS)
    del payload["Total sessions"]
    with pytest.raises(DecodeError, match="Total sessions"):
        parse_status(encode(payload))


def test_parse_status_non_numeric_value():
    payload = dict(STATUS, raw_avg_auth_time="    2s")
    with pytest.raises(DecodeError, match="raw_avg_auth_time"):
        parse_status(encode(payload))


def test_parse_status_rejects_booleans():
    payload = dict(STATUS, **{"IPs in ban list": True})
    with pytest.raises(DecodeError):
        parse_status(encode(payload))


def test_parse_status_truncated_output():
    truncated = json.dumps(STATUS)[:80].encode()
    with pytest.raises(DecodeError, match="Invalid JSON"):
        parse_status(truncated)


def test_parse_status_empty_output():
    with pytest.raises(DecodeError):
        parse_status(b"  \n")


def test_parse_status_wrong_shape():
    with pytest.raises(DecodeError, match="JSON object"):
        parse_status(b"[]")


def test_parse_status_invalid_utf8():
    with pytest.raises(DecodeError, match="UTF-8"):
        parse_status(b"\xff\xfe{}")


def test_parse_sessions_maps_fields():
    sessions = parse_sessions(encode(USERS))

    assert len(sessions) == 2
    alice = sessions[0]
    assert alice.username == "alice"
    assert alice.remote_ip == "198.51.100.10"
    assert alice.mtu == "1434"
    assert alice.ipv4 == "10.10.0.2"
    assert alice.ipv6 == "fd00::2"
    assert alice.device == "vpns0"
    assert alice.user_agent == "AnyConnect Linux 4.10"
    assert alice.connected_at == 1714636800
    assert alice.tx_bytes == 4096
    assert alice.rx_bytes == 2048
    assert alice.session_id == 501
    assert alice.state == "connected"
    assert alice.label_values() == (
        "alice", "198.51.100.10", "1434", "10.10.0.2", "fd00::2",
        "vpns0", "AnyConnect Linux 4.10",
    )


@pytest.mark.parametrize("raw", [b"", b"\n", b"[]", b"null"])
def test_parse_sessions_empty_is_valid(raw):
    assert parse_sessions(raw) == ()


def test_parse_sessions_optional_labels_default_empty():
    user = make_user()
    del user["IPv6"]
    del user["User-Agent"]
    user["MTU"] = 1400

    (session,) = parse_sessions(encode([user]))
    assert session.ipv6 == ""
    assert session.user_agent == ""
    assert session.mtu == "1400"


@pytest.mark.parametrize("key", ["Username", "Remote IP", "RX", "TX", "raw_connected_at"])
def test_parse_sessions_missing_required_key(key):
    user = make_user()
    del user[key]
    with pytest.raises(DecodeError, match=key):
        parse_sessions(encode([make_user(), user]))


def test_parse_sessions_non_numeric_bytes():
    with pytest.raises(DecodeError, match="RX"):
        parse_sessions(encode([make_user(RX="2.0 KB")]))


def test_parse_sessions_rejects_nested_label():
    with pytest.raises(DecodeError, match="Device"):
        parse_sessions(encode([make_user(Device=["vpns0"])]))


def test_parse_sessions_wrong_shape():
    with pytest.raises(DecodeError, match="JSON array"):
        parse_sessions(encode({"Username": "alice"}))
    with pytest.raises(DecodeError, match="entry 0"):
        parse_sessions(encode(["alice"]))


@pytest.mark.parametrize("value", ["nan", "inf", "-Infinity", "1e400", float("nan")])
def test_parse_status_rejects_non_finite_pid(value):
    payload = dict(STATUS, **{"Server PID": value})
    with pytest.raises(DecodeError, match="Server PID"):
        parse_status(encode(payload))


def test_parse_status_rejects_json_infinity_literal():
    raw = json.dumps(STATUS)[:-1] + ', "Sec-mod PID": Infinity}'
    with pytest.raises(DecodeError, match="Sec-mod PID"):
        parse_status(raw.encode())


@pytest.mark.parametrize("value", ["nan", "Infinity"])
def test_parse_sessions_rejects_non_finite_id(value):
    with pytest.raises(DecodeError, match="ID"):
        parse_sessions(encode([make_user(ID=value)]))


def test_parse_status_rejects_non_finite_counter():
    with pytest.raises(DecodeError, match="raw_tx"):
        parse_status(encode(dict(STATUS, raw_tx="NaN")))
