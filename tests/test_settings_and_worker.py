from __future__ import annotations

import sys
from datetime import timedelta

import pytest

from app.billing import service
from app.workers import expiry_worker
from settings import settings, validate_env_settings
from tests.conftest import T0

STRONG_SECRET = "s" * 40


def test_dev_env_accepts_defaults(monkeypatch):
    monkeypatch.setattr(settings, "ENV", "dev", raising=False)
    validate_env_settings()


def test_prod_requires_secrets(monkeypatch):
    monkeypatch.setattr(settings, "ENV", "prod", raising=False)
    monkeypatch.setattr(settings, "BILLING_STORE", "postgres", raising=False)
    monkeypatch.setattr(settings, "DATABASE_URL", "", raising=False)
    monkeypatch.setattr(settings, "CRON_SECRET", "", raising=False)
    monkeypatch.setattr(settings, "GATEWAY_WEBHOOK_SECRET", "", raising=False)

    with pytest.raises(RuntimeError) as exc:
        validate_env_settings()
    msg = str(exc.value)
    for name in ("DATABASE_URL", "JWT_SECRET", "CRON_SECRET", "GATEWAY_WEBHOOK_SECRET"):
        assert name in msg


def test_prod_real_gateway_needs_endpoint(monkeypatch):
    monkeypatch.setattr(settings, "ENV", "prod", raising=False)
    monkeypatch.setattr(settings, "DATABASE_URL", "postgresql://u:p@db/billing", raising=False)
    monkeypatch.setattr(settings, "JWT_SECRET", STRONG_SECRET, raising=False)
    monkeypatch.setattr(settings, "CRON_SECRET", "cron", raising=False)
    monkeypatch.setattr(settings, "GATEWAY_WEBHOOK_SECRET", "whsec", raising=False)
    monkeypatch.setattr(settings, "GATEWAY_MODE", "real", raising=False)
    monkeypatch.setattr(settings, "GATEWAY_BASE_URL", "", raising=False)
    monkeypatch.setattr(settings, "GATEWAY_API_KEY", "", raising=False)

    with pytest.raises(RuntimeError) as exc:
        validate_env_settings()
    assert "GATEWAY_BASE_URL" in str(exc.value)

    monkeypatch.setattr(settings, "GATEWAY_BASE_URL", "https://gw.example.com", raising=False)
    monkeypatch.setattr(settings, "GATEWAY_API_KEY", "key", raising=False)
    validate_env_settings()


# ---------------------------
# Expiry worker
# ---------------------------

def test_process_once_runs_sweep(catalog):
    service.create_transaction(
        customer_id="cust-1", lines=[service.CartLine(kind="product", item_id="pkg-basic")], currency="idr", now=T0
    )
    stats = expiry_worker.process_once(now=T0 + timedelta(days=8))
    assert stats["checked"] == 1
    assert stats["transactions_expired"] == 1


def test_run_forever_sleeps_only_when_drained(monkeypatch):
    runs = iter([{"checked": 2}, {"checked": 0}, {"checked": 1}])
    monkeypatch.setattr(expiry_worker, "process_once", lambda **kw: next(runs))
    sleeps = []

    expiry_worker.run_forever(poll_seconds=7, batch_size=2, max_loops=3, sleep=sleeps.append)
    assert sleeps == [7, 7]


def test_sweep_script_prints_counts(monkeypatch, capsys):
    from scripts import run_expiry_sweep

    monkeypatch.setattr(
        run_expiry_sweep,
        "process_once",
        lambda **kw: {"checked": 3, "payments_expired": 1, "transactions_expired": 2, "errors": 0},
    )
    monkeypatch.setattr(sys, "argv", ["run_expiry_sweep.py", "--batch-size", "50"])
    run_expiry_sweep.main()

    out = capsys.readouterr().out
    assert "checked=3" in out
    assert "transactions_expired=2" in out


def test_run_forever_backs_off_when_batch_has_errors(monkeypatch):
    runs = iter([{"checked": 2, "errors": 2}, {"checked": 2, "errors": 0}, {"checked": 2, "errors": 1}])
    monkeypatch.setattr(expiry_worker, "process_once", lambda **kw: next(runs))
    sleeps = []

    expiry_worker.run_forever(poll_seconds=5, batch_size=2, max_loops=3, sleep=sleeps.append)
    assert sleeps == [5, 5]
