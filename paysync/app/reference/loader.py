"""Concurrent bulk loading of provider reference data (tax rates, prices)."""
from __future__ import annotations

import io
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from types import MappingProxyType
from typing import (
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from ..billing.client import ProviderAPI
from ..billing.exceptions import ReferenceLoadError, UnknownReferenceError
from ..billing.models import Price, ProviderResource, TaxRate
from ..billing.resources import retrieve_price, retrieve_tax_rate

logger = logging.getLogger(__name__)

DEFAULT_HEADROOM = 10

T = TypeVar("T", bound=ProviderResource)

IdSource = Union[str, io.TextIOBase, Iterable[str]]
ErrorHandler = Callable[[ReferenceLoadError], None]


def scan_reference_ids(source: IdSource) -> Iterator[str]:
    """Yield one id per non-blank line, skipping ``#`` comment lines."""

    lines: Iterable[str] = source.splitlines() if isinstance(source, str) else source
    for line in lines:
        candidate = line.strip()
        if not candidate or candidate.startswith("#"):
            continue
        yield candidate


def available_cpus() -> int:
    """CPUs this process may run on, honouring affinity where the platform reports it."""

    if hasattr(os, "sched_getaffinity"):
        return len(os.sched_getaffinity(0)) or 1
    return os.cpu_count() or 1


def default_worker_count(headroom: int = DEFAULT_HEADROOM) -> int:
    return available_cpus() + max(0, headroom)


class _Snapshot(Generic[T]):
    __slots__ = ("by_id", "by_key", "groups")

    def __init__(
        self,
        by_id: Mapping[str, T],
        by_key: Mapping[str, T],
        groups: Mapping[str, Tuple[T, ...]],
    ) -> None:
        self.by_id = MappingProxyType(dict(by_id))
        self.by_key = MappingProxyType(dict(by_key))
        self.groups = MappingProxyType(dict(groups))


class ReferenceTable(Generic[T]):
    """Lookup table of reference entities keyed by a grouping attribute.

    Entities are fetched concurrently on :meth:`reload` and merged under one
    lock; the merged result is published as a new immutable snapshot so a
    reader never sees half a batch. Ids that are already loaded are never
    fetched again, and an id that failed to load is retried by the next
    reload.
    """

    def __init__(self, key: Callable[[T], str], *, headroom: int = DEFAULT_HEADROOM) -> None:
        self._key = key
        self._max_workers = default_worker_count(headroom)
        self._lock = threading.Lock()
        self._snapshot: _Snapshot[T] = _Snapshot({}, {}, {})

    def _pending_ids(self, source: IdSource) -> List[str]:
        loaded = self._snapshot.by_id
        pending: List[str] = []
        seen = set()
        for reference_id in scan_reference_ids(source):
            if reference_id in loaded or reference_id in seen:
                continue
            seen.add(reference_id)
            pending.append(reference_id)
        return pending

    def _fetch_all(
        self,
        pending: List[str],
        fetch_one: Callable[[str], T],
        error_handler: Optional[ErrorHandler],
    ) -> Dict[str, T]:
        fetched: Dict[str, T] = {}
        workers = min(len(pending), self._max_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reference-load") as pool:
            futures = {pool.submit(fetch_one, reference_id): reference_id for reference_id in pending}
            for future in as_completed(futures):
                reference_id = futures[future]
                try:
                    fetched[reference_id] = future.result()
                except Exception as exc:
                    error = ReferenceLoadError(reference_id, exc)
                    logger.warning("Could not load reference %s: %s", reference_id, exc)
                    if error_handler is not None:
                        try:
                            error_handler(error)
                        except Exception:
                            logger.exception("Error handler failed for reference %s", reference_id)
        return fetched

    def reload(
        self,
        source: IdSource,
        fetch_one: Callable[[str], T],
        error_handler: Optional[ErrorHandler] = None,
    ) -> int:
        """Fetch ids not loaded yet and merge them; returns how many were added."""

        pending = self._pending_ids(source)
        if not pending:
            return 0

        fetched = self._fetch_all(pending, fetch_one, error_handler)

        with self._lock:
            current = self._snapshot
            by_id = dict(current.by_id)
            by_key = dict(current.by_key)
            groups: Dict[str, Tuple[T, ...]] = dict(current.groups)
            added = 0
            for reference_id in pending:
                item = fetched.get(reference_id)
                if item is None or reference_id in by_id:
                    continue
                key = self._key(item)
                by_id[reference_id] = item
                by_key[key] = item
                groups[key] = groups.get(key, ()) + (item,)
                added += 1
            self._snapshot = _Snapshot(by_id, by_key, groups)

        logger.info(
            "Loaded %d of %d reference ids (%d failed)", added, len(pending), len(pending) - len(fetched)
        )
        return added

    def get(self, key: str) -> T:
        item = self._snapshot.by_key.get(key)
        if item is None:
            raise UnknownReferenceError(key)
        return item

    def find(self, key: str) -> Optional[T]:
        return self._snapshot.by_key.get(key)

    def grouped(self, key: str) -> List[T]:
        return list(self._snapshot.groups.get(key, ()))

    def ids(self) -> List[str]:
        return list(self._snapshot.by_id)

    def values(self) -> List[T]:
        return list(self._snapshot.by_id.values())

    def __len__(self) -> int:
        return len(self._snapshot.by_id)

    def __contains__(self, key: object) -> bool:
        return key in self._snapshot.by_key


def load_reference_table(
    source: IdSource,
    fetch_one: Callable[[str], T],
    key: Callable[[T], str],
    error_handler: Optional[ErrorHandler] = None,
    *,
    headroom: int = DEFAULT_HEADROOM,
) -> ReferenceTable[T]:
    table: ReferenceTable[T] = ReferenceTable(key, headroom=headroom)
    table.reload(source, fetch_one, error_handler)
    return table


def tax_rate_jurisdiction(rate: TaxRate) -> str:
    return rate.jurisdiction


def price_product(price: Price) -> str:
    return price.product_id


def load_tax_rates(
    source: IdSource,
    client: ProviderAPI,
    error_handler: Optional[ErrorHandler] = None,
    *,
    headroom: int = DEFAULT_HEADROOM,
) -> ReferenceTable[TaxRate]:
    """Load tax rates keyed by jurisdiction."""

    return load_reference_table(
        source,
        lambda tax_rate_id: retrieve_tax_rate(client, tax_rate_id),
        tax_rate_jurisdiction,
        error_handler,
        headroom=headroom,
    )


def load_prices(
    source: IdSource,
    client: ProviderAPI,
    error_handler: Optional[ErrorHandler] = None,
    *,
    headroom: int = DEFAULT_HEADROOM,
) -> ReferenceTable[Price]:
    """Load prices, each with its product embedded, keyed by product id."""

    return load_reference_table(
        source,
        lambda price_id: retrieve_price(client, price_id),
        price_product,
        error_handler,
        headroom=headroom,
    )


__all__ = [
    "DEFAULT_HEADROOM",
    "ReferenceTable",
    "available_cpus",
    "default_worker_count",
    "load_prices",
    "load_reference_table",
    "load_tax_rates",
    "scan_reference_ids",
]
