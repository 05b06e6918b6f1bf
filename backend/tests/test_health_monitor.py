from unittest.mock import MagicMock

import psycopg2
import requests

import health_monitor
import models


def _response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.json.return_value = payload
    return resp


def _rows(*results):
    """Patchable stand-in for ``_fetch`` returning ``results`` in call order."""
    return MagicMock(side_effect=list(results))


def test_check_http_service_reports_status(monkeypatch):
    monkeypatch.setattr(health_monitor.requests, "get", MagicMock(return_value=_response(503)))

    ok, message = health_monitor.check_http_service("ordering /health", "http://api/health")

    assert ok is False
    assert message == "ordering /health: FAIL (503)"


def test_check_http_service_handles_connection_errors(monkeypatch):
    monkeypatch.setattr(health_monitor.requests, "get",
                        MagicMock(side_effect=requests.ConnectionError("refused")))

    ok, message = health_monitor.check_http_service("auth /health", "http://auth/health")

    assert ok is False
    assert message.startswith("auth /health: ERROR")


def test_menu_check_needs_available_items(monkeypatch):
    get = MagicMock(return_value=_response(200, [{"id": 1, "name": "Pasta"}, {"id": 2, "name": "Soup"}]))
    monkeypatch.setattr(health_monitor.requests, "get", get)

    assert health_monitor.check_menu() == (True, "menu: OK (2 items)")
    get.assert_called_once_with(f"{health_monitor.BACKEND_API_URL}/menu", timeout=5.0)

    get.return_value = _response(200, [])
    assert health_monitor.check_menu() == (False, "menu: no available items")

    get.return_value = _response(500)
    assert health_monitor.check_menu() == (False, "menu: FAIL (500)")


def test_schema_check_names_missing_tables(monkeypatch):
    present = [(name,) for name in models.Base.metadata.tables if name != "bills"]
    monkeypatch.setattr(health_monitor, "_fetch", _rows(present))

    assert health_monitor.check_schema() == (False, "postgres: missing tables bills")


def test_schema_check_reports_database_errors(monkeypatch):
    monkeypatch.setattr(health_monitor, "_fetch", MagicMock(side_effect=psycopg2.OperationalError("down")))

    ok, message = health_monitor.check_schema()

    assert ok is False
    assert message.startswith("postgres: ERROR")


def test_kitchen_backlog(monkeypatch):
    monkeypatch.setattr(health_monitor, "_fetch", _rows([(0,)], [(0,)]))
    assert health_monitor.check_kitchen_backlog() == (True, "kitchen backlog: OK")

    fetch = _rows([(3,)], [(1,)])
    monkeypatch.setattr(health_monitor, "_fetch", fetch)
    ok, message = health_monitor.check_kitchen_backlog()

    assert ok is False
    assert message.startswith("kitchen backlog: 3 orders older than")
    assert fetch.call_args_list[0][0][1] == (tuple(models.ACTIVE_ORDER_STATUSES), health_monitor.STALE_ORDER_MINUTES)


def test_open_billed_sessions(monkeypatch):
    monkeypatch.setattr(health_monitor, "_fetch", _rows([]))
    assert health_monitor.check_open_billed_sessions() == (True, "sessions: OK")

    monkeypatch.setattr(health_monitor, "_fetch", _rows([(4,), (9,)]))
    assert health_monitor.check_open_billed_sessions() == (False, "sessions: billed but still active 4, 9")


def test_monitor_all_services_collects_results(caplog):
    checks = {
        "backend_api": lambda: (True, "ordering /health: OK (200)"),
        "redis": lambda: (False, "redis: ERROR (timeout)"),
    }

    with caplog.at_level("INFO", logger="HealthMonitor"):
        results = health_monitor.monitor_all_services(checks)

    assert results == {"backend_api": True, "redis": False}
    assert "[FAIL] redis: ERROR (timeout)" in caplog.text


def test_redis_port_from_service_link(monkeypatch):
    monkeypatch.setenv("REDIS_PORT", "tcp://10.0.0.5:6380")
    assert health_monitor._detect_redis_port() == 6380

    monkeypatch.setenv("REDIS_PORT", "garbage")
    assert health_monitor._detect_redis_port() == 6379
