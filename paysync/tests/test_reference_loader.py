"""Tests for concurrent reference data loading."""
from __future__ import annotations

import io
import threading
import time
from typing import List

import pytest

from paysync.app.billing import ProviderError, ReferenceLoadError, TaxRate, UnknownReferenceError
from paysync.app.reference import (
    ReferenceTable,
    load_prices,
    load_reference_table,
    load_tax_rates,
    scan_reference_ids,
)
from paysync.app.reference import loader

ID_FILE = """line_1
line_2

# comment
   line_3




line_4"""


def _rate(rate_id: str, jurisdiction: str) -> TaxRate:
    return TaxRate(attributes={"id": rate_id, "jurisdiction": jurisdiction, "percentage": 20.0})


def test_scan_reference_ids_skips_blank_and_comment_lines():
    assert list(scan_reference_ids(ID_FILE)) == ["line_1", "line_2", "line_3", "line_4"]
    assert list(scan_reference_ids(io.StringIO(ID_FILE))) == ["line_1", "line_2", "line_3", "line_4"]
    assert list(scan_reference_ids(["  # note", "\t\n", "txr_1\n"])) == ["txr_1"]


def test_failures_are_isolated_and_reported():
    errors: List[ReferenceLoadError] = []

    def fetch(rate_id: str) -> TaxRate:
        if rate_id == "txr_bad":
            raise ProviderError(status=404, message="No such tax rate")
        return _rate(rate_id, rate_id.upper())

    table = load_reference_table("txr_a\ntxr_bad\ntxr_b\n", fetch, lambda rate: rate.jurisdiction, errors.append)

    assert sorted(table.ids()) == ["txr_a", "txr_b"]
    assert table.get("TXR_A").id == "txr_a"
    assert [error.reference_id for error in errors] == ["txr_bad"]
    assert isinstance(errors[0].cause, ProviderError)


def test_get_unknown_key_raises_lookup_error():
    table = load_reference_table("txr_1", lambda rate_id: _rate(rate_id, "GB"), lambda rate: rate.jurisdiction)

    with pytest.raises(UnknownReferenceError) as excinfo:
        table.get("FR")

    assert isinstance(excinfo.value, LookupError)
    assert table.find("FR") is None
    assert "GB" in table
    assert len(table) == 1


def test_reload_only_fetches_new_ids():
    fetched: List[str] = []
    lock = threading.Lock()

    def fetch(rate_id: str) -> TaxRate:
        with lock:
            fetched.append(rate_id)
        return _rate(rate_id, rate_id)

    table: ReferenceTable[TaxRate] = ReferenceTable(lambda rate: rate.jurisdiction)
    assert table.reload("a\nb\na\n", fetch) == 2
    assert table.reload("a\nb\nc\n", fetch) == 1

    assert sorted(fetched) == ["a", "b", "c"]
    assert sorted(table.ids()) == ["a", "b", "c"]


def test_failed_id_is_retried_on_next_reload():
    attempts = {"txr_1": 0}

    def fetch(rate_id: str) -> TaxRate:
        attempts[rate_id] += 1
        if attempts[rate_id] == 1:
            raise OSError("timeout")
        return _rate(rate_id, "GB")

    table = load_reference_table("txr_1", fetch, lambda rate: rate.jurisdiction)
    assert len(table) == 0

    table.reload("txr_1", fetch)
    assert table.get("GB").id == "txr_1"


def test_merge_follows_input_order_for_shared_keys():
    def fetch(rate_id: str) -> TaxRate:
        # Finish in reverse order of submission.
        time.sleep(0.02 if rate_id == "first" else 0)
        return _rate(rate_id, "GB")

    table = load_reference_table("first\nsecond", fetch, lambda rate: rate.jurisdiction, headroom=2)

    assert [rate.id for rate in table.grouped("GB")] == ["first", "second"]
    assert table.get("GB").id == "second"


def test_fetches_run_concurrently():
    barrier = threading.Barrier(3, timeout=5)

    def fetch(rate_id: str) -> TaxRate:
        barrier.wait()
        return _rate(rate_id, rate_id)

    table = load_reference_table("a\nb\nc", fetch, lambda rate: rate.jurisdiction)

    assert len(table) == 3


def test_load_tax_rates_from_provider(provider):
    provider.respond("GET", "/v1/tax_rates/txr_gb", {"id": "txr_gb", "jurisdiction": "GB", "percentage": 20.0})
    provider.respond("GET", "/v1/tax_rates/txr_de", {"id": "txr_de", "jurisdiction": "DE", "percentage": 19.0})
    errors: List[ReferenceLoadError] = []

    rates = load_tax_rates(io.StringIO("txr_gb\ntxr_de\ntxr_missing\n"), provider, errors.append)

    assert rates.get("DE").percentage == 19.0
    assert rates.get("GB").percentage == 20.0
    assert [error.reference_id for error in errors] == ["txr_missing"]


def test_load_prices_embeds_products(provider):
    provider.respond(
        "GET",
        "/v1/prices/price_monthly",
        {"id": "price_monthly", "product": "prod_pro", "unit_amount": 900, "currency": "gbp"},
    )
    provider.respond(
        "GET",
        "/v1/prices/price_yearly",
        {"id": "price_yearly", "product": "prod_pro", "unit_amount": 9000, "currency": "gbp"},
    )
    provider.respond("GET", "/v1/products/prod_pro", {"id": "prod_pro", "name": "Pro"})

    prices = load_prices("price_monthly\nprice_yearly", provider)

    assert sorted(price.id for price in prices.grouped("prod_pro")) == ["price_monthly", "price_yearly"]
    assert all(price.product["name"] == "Pro" for price in prices.values())
    assert prices.find("prod_pro").unit_amount in {900, 9000}


def test_raising_error_handler_does_not_drop_the_batch():
    def fetch(rate_id: str) -> TaxRate:
        if rate_id == "bad":
            raise ProviderError(status=500, message="boom")
        return _rate(rate_id, rate_id.upper())

    def handler(error: ReferenceLoadError) -> None:
        raise ValueError("handler broke")

    table: ReferenceTable[TaxRate] = ReferenceTable(lambda rate: rate.jurisdiction)
    added = table.reload("a\nb\nbad\nc", fetch, handler)

    assert added == 3
    assert sorted(table.ids()) == ["a", "b", "c"]


def test_in_flight_fetches_are_bounded_by_cpus_plus_headroom(monkeypatch):
    monkeypatch.setattr(loader, "available_cpus", lambda: 1)
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def fetch(rate_id: str) -> TaxRate:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.01)
        with lock:
            in_flight -= 1
        return _rate(rate_id, rate_id)

    ids = "\n".join(f"txr_{index}" for index in range(10))
    table = load_reference_table(ids, fetch, lambda rate: rate.jurisdiction, headroom=1)

    assert len(table) == 10
    assert 1 <= peak <= 2


def test_available_cpus_prefers_affinity(monkeypatch):
    monkeypatch.setattr(loader.os, "sched_getaffinity", lambda pid: {0, 3}, raising=False)
    monkeypatch.setattr(loader.os, "cpu_count", lambda: 64)

    assert loader.available_cpus() == 2
    assert loader.default_worker_count(headroom=5) == 7


def test_available_cpus_falls_back_to_cpu_count(monkeypatch):
    monkeypatch.delattr(loader.os, "sched_getaffinity", raising=False)
    monkeypatch.setattr(loader.os, "cpu_count", lambda: None)

    assert loader.available_cpus() == 1
