"""Tests for the snapshot store and the metrics it exports."""

import threading

from ocserv_exporter import (
    STATUS_GAUGES, SnapshotStore, TransportError, parse_sessions, parse_status
)

from conftest import STATUS, USERS, encode, make_user, sample_count


def _user_labels(name, ip="198.51.100.10", device="vpns0"):
    return {
        "username": name, "remote_ip": ip, "mtu": "1434",
        "ocserv_ipv4": "10.10.0.2", "ocserv_ipv6": "fd00::2",
        "device": device, "user_agent": "AnyConnect Linux 4.10",
    }


def test_new_store_is_empty():
    store = SnapshotStore()
    snapshot = store.snapshot
    assert snapshot.status is None
    assert snapshot.sessions is None
    assert store.registry.get_sample_value("occtl_status_scrape_error_total") == 0
    assert store.registry.get_sample_value("occtl_users_scrape_error_total") == 0
    assert sample_count(store.registry, "ocserv_user_tx_bytes") == 0


def test_stores_do_not_share_metrics():
    first, second = SnapshotStore(), SnapshotStore()
    first.status_failed(TransportError("down"))
    assert first.registry.get_sample_value("occtl_status_scrape_error_total") == 1
    assert second.registry.get_sample_value("occtl_status_scrape_error_total") == 0


def test_update_status_sets_every_gauge():
    store = SnapshotStore()
    status = parse_status(encode(STATUS))
    store.update_status(status)

    for attr, metric_name, _ in STATUS_GAUGES:
        assert store.registry.get_sample_value(metric_name) == getattr(status, attr)
    assert store.snapshot.status == status


def test_status_failure_zeroes_gauges_and_keeps_last_status():
    store = SnapshotStore()
    status = parse_status(encode(STATUS))
    store.update_status(status)
    store.status_failed(TransportError("socket unreachable"), 0.5)

    for _, metric_name, _ in STATUS_GAUGES:
        assert store.registry.get_sample_value(metric_name) == 0
    assert store.registry.get_sample_value("occtl_status_scrape_error_total") == 1
    assert store.snapshot.status == status
    assert store.stats["status"].consecutive_failures == 1
    assert store.stats["status"].last_error == "socket unreachable"


def test_update_sessions_replaces_previous_series():
    store = SnapshotStore()
    store.update_sessions(parse_sessions(encode(USERS)))
    assert sample_count(store.registry, "ocserv_user_tx_bytes") == 2

    carol = make_user(Username="carol", **{"Remote IP": "198.51.100.30"})
    store.update_sessions(parse_sessions(encode([carol])))

    assert sample_count(store.registry, "ocserv_user_tx_bytes") == 1
    assert sample_count(store.registry, "ocserv_user_rx_bytes") == 1
    assert sample_count(store.registry, "ocserv_user_start_time_seconds") == 1
    assert store.registry.get_sample_value(
        "ocserv_user_tx_bytes", _user_labels("alice")) is None
    assert store.registry.get_sample_value(
        "ocserv_user_tx_bytes", _user_labels("carol", ip="198.51.100.30")) == 4096


def test_session_gauge_values():
    store = SnapshotStore()
    store.update_sessions(parse_sessions(encode(USERS)))

    labels = _user_labels("alice")
    assert store.registry.get_sample_value("ocserv_user_tx_bytes", labels) == 4096
    assert store.registry.get_sample_value("ocserv_user_rx_bytes", labels) == 2048
    assert store.registry.get_sample_value("ocserv_user_start_time_seconds", labels) == 1714636800


def test_sessions_failure_clears_series():
    store = SnapshotStore()
    sessions = parse_sessions(encode(USERS))
    store.update_sessions(sessions)
    store.sessions_failed(TransportError("boom"))

    assert sample_count(store.registry, "ocserv_user_tx_bytes") == 0
    assert store.registry.get_sample_value("occtl_users_scrape_error_total") == 1
    assert store.snapshot.sessions == sessions


def test_concurrent_readers_never_see_partial_session_sets():
    store = SnapshotStore()
    big = parse_sessions(encode([
        make_user(Username=f"user{i}", **{"Remote IP": f"198.51.100.{i}"})
        for i in range(50)
    ]))
    small = parse_sessions(encode(USERS))
    stop = threading.Event()
    observed = []

    def reader():
        while True:
            done = stop.is_set()
            with store.read() as snapshot:
                counts = {
                    sample_count(store.registry, name)
                    for name in ("ocserv_user_tx_bytes", "ocserv_user_rx_bytes",
                                 "ocserv_user_start_time_seconds")
                }
                expected = len(snapshot.sessions) if snapshot.sessions else 0
            observed.append((counts, expected))
            if done:
                break

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for i in range(200):
        store.update_sessions(big if i % 2 else small)
    stop.set()
    for thread in threads:
        thread.join()

    assert observed
    for counts, expected in observed:
        assert counts == {expected}


def test_concurrent_readers_never_see_partial_status():
    store = SnapshotStore()
    first = parse_status(encode(STATUS))
    second = parse_status(encode({
        key: value * 7 + 1 if isinstance(value, int) else value
        for key, value in STATUS.items()
    }))
    names = [metric_name for _, metric_name, _ in STATUS_GAUGES]
    allowed = {
        tuple(float(getattr(first, attr)) for attr, _, _ in STATUS_GAUGES),
        tuple(float(getattr(second, attr)) for attr, _, _ in STATUS_GAUGES),
        tuple(0.0 for _ in STATUS_GAUGES),
    }
    stop = threading.Event()
    observed = []

    def reader():
        while True:
            done = stop.is_set()
            with store.read():
                values = tuple(store.registry.get_sample_value(name) for name in names)
            observed.append(values)
            if done:
                break

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for i in range(300):
        if i % 5 == 4:
            store.status_failed(TransportError("down"))
        else:
            store.update_status(second if i % 2 else first)
    stop.set()
    for thread in threads:
        thread.join()

    assert observed
    for values in observed:
        assert values in allowed


def test_identical_label_sets_share_one_series():
    store = SnapshotStore()
    sessions = parse_sessions(encode([
        make_user(ID=501, TX="100"),
        make_user(ID=502, TX="300"),
    ]))
    store.update_sessions(sessions)

    assert len(store.snapshot.sessions) == 2
    assert sample_count(store.registry, "ocserv_user_tx_bytes") == 1
    assert store.registry.get_sample_value(
        "ocserv_user_tx_bytes", _user_labels("alice")
    ) == 300
