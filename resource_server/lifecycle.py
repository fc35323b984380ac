from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field

from resource_server.db import now_ms
from resource_server.errors import PersistenceFailed, ResourceServerError, SigningFailed
from resource_server.observability import increment, log_event, observe_ms
from resource_server.storage import ObjectStoreGateway, SignedURL
from resource_server.store import ResourceRecord, ResourceStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    refreshed: set[str] = field(default_factory=set)
    # Stale in the snapshot but already renewed by someone else.
    skipped: set[str] = field(default_factory=set)
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False


@dataclass(frozen=True)
class _Outcome:
    signed: SignedURL
    signed_at: int
    resource_id: str
    renewed: bool


class URLLifecycleManager:
    """Owns the signed URL of every resource.

    Refreshes are single-flight per object key: the first caller signs and
    persists, later callers for the same key block on the same future and get
    its outcome. A joiner for another resource sharing the key writes that
    outcome to its own row. The lock only guards the in-flight and pending
    maps, so refreshes of different keys run in parallel.
    """

    def __init__(
        self,
        gateway: ObjectStoreGateway,
        store: ResourceStore,
        *,
        sign_ttl_s: int,
        refresh_buffer_s: int,
        join_timeout_s: float = 30.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if sign_ttl_s <= refresh_buffer_s:
            raise ValueError("sign_ttl_s must be longer than refresh_buffer_s")
        self.gateway = gateway
        self.store = store
        self.sign_ttl_s = sign_ttl_s
        self.refresh_buffer_ms = refresh_buffer_s * 1000
        self.join_timeout_s = join_timeout_s
        self.clock = clock
        self._lock = threading.Lock()
        self._inflight: dict[str, Future[_Outcome]] = {}
        # Signed but not yet persisted, keyed by resource id.
        self._pending: dict[str, tuple[SignedURL, int]] = {}

    def is_stale(self, record: ResourceRecord, now: int | None = None) -> bool:
        if record.signed_url is None or record.url_expires_at is None:
            return True
        now = self.clock() if now is None else now
        return now >= record.url_expires_at - self.refresh_buffer_ms

    def is_refreshing(self, object_key: str) -> bool:
        with self._lock:
            return object_key in self._inflight

    def pending_ids(self) -> set[str]:
        with self._lock:
            return set(self._pending)

    def current(self, record: ResourceRecord) -> ResourceRecord:
        """Return ``record`` with any signed-but-unsaved URL applied."""
        with self._lock:
            pending = self._pending.get(record.id)
        if pending is None:
            return record
        signed, signed_at = pending
        return record.replace(
            signed_url=signed.url, url_expires_at=signed.expires_at, url_signed_at=signed_at
        )

    def get_fresh_url(self, record: ResourceRecord) -> SignedURL:
        current = self.current(record)
        if not self.is_stale(current):
            return SignedURL(url=current.signed_url, expires_at=current.url_expires_at)
        return self.refresh(record, force=False)

    def refresh(self, record: ResourceRecord, force: bool = True) -> SignedURL:
        return self._refresh(record, force).signed

    def sweep_stale(
        self,
        records: Iterable[ResourceRecord],
        should_stop: Callable[[], bool] | None = None,
    ) -> SweepResult:
        result = SweepResult()
        for record in records:
            if should_stop is not None and should_stop():
                result.cancelled = True
                break
            if not record.is_active:
                continue
            if not self.is_stale(self.current(record)) and not self._has_pending(record.id):
                continue
            try:
                outcome = self._refresh(record, force=False)
            except ResourceServerError as exc:
                result.failed[record.id] = str(exc)
                continue
            except Exception as exc:
                logger.exception("refresh of %s failed unexpectedly", record.id)
                result.failed[record.id] = str(exc)
                continue
            if outcome.renewed:
                result.refreshed.add(record.id)
            else:
                result.skipped.add(record.id)
        log_event(
            "sweep.completed",
            refreshed=len(result.refreshed),
            skipped=len(result.skipped),
            failed=len(result.failed),
            cancelled=result.cancelled,
        )
        return result

    def _refresh(self, record: ResourceRecord, force: bool) -> _Outcome:
        key = record.object_key
        with self._lock:
            flight = self._inflight.get(key)
            leader = flight is None
            if leader:
                flight = Future()
                self._inflight[key] = flight
        if not leader:
            return self._join(record, flight)

        try:
            outcome = self._refresh_leader(record, force)
        except BaseException as exc:
            flight.set_exception(exc)
            raise
        else:
            flight.set_result(outcome)
            return outcome
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def _join(self, record: ResourceRecord, flight: Future[_Outcome]) -> _Outcome:
        increment("url.refresh.joined")
        try:
            outcome = flight.result(timeout=self.join_timeout_s)
        except FutureTimeoutError as exc:
            raise SigningFailed(f"timed out waiting for refresh of {record.object_key!r}") from exc
        if outcome.resource_id == record.id:
            return _Outcome(outcome.signed, outcome.signed_at, record.id, renewed=False)
        # Another resource led the refresh of this key; its row is not ours.
        self._persist(record, outcome.signed, outcome.signed_at)
        return _Outcome(outcome.signed, outcome.signed_at, record.id, renewed=True)

    def _has_pending(self, resource_id: str) -> bool:
        with self._lock:
            return resource_id in self._pending

    def _refresh_leader(self, record: ResourceRecord, force: bool) -> _Outcome:
        with self._lock:
            pending = self._pending.get(record.id)
        if pending is not None and not self.is_stale(self.current(record)):
            # A previous sign never reached the store; persist it instead of signing again.
            signed, signed_at = pending
            self._persist(record, signed, signed_at)
            return _Outcome(signed, signed_at, record.id, renewed=True)

        if not force:
            # Another caller may have committed a refresh after our snapshot was read.
            latest = self.current(self.store.load(record.id))
            if not self.is_stale(latest):
                return _Outcome(
                    SignedURL(url=latest.signed_url, expires_at=latest.url_expires_at),
                    latest.url_signed_at if latest.url_signed_at is not None else self.clock(),
                    record.id,
                    renewed=False,
                )

        t0 = time.perf_counter()
        signed_at = self.clock()
        try:
            signed = self.gateway.sign(record.object_key, self.sign_ttl_s)
        except SigningFailed:
            increment("url.refresh.failed")
            log_event("url.refresh_failed", resource_id=record.id, object_key=record.object_key)
            raise
        except Exception as exc:
            increment("url.refresh.failed")
            log_event("url.refresh_failed", resource_id=record.id, object_key=record.object_key)
            raise SigningFailed(f"could not sign {record.object_key!r}: {exc}") from exc
        if signed.expires_at <= signed_at:
            raise SigningFailed(f"object store returned an expired URL for {record.object_key!r}")

        increment("url.refresh.signed")
        observe_ms("url.refresh.sign_ms", (time.perf_counter() - t0) * 1000.0)
        self._persist(record, signed, signed_at)
        log_event(
            "url.refresh",
            resource_id=record.id,
            object_key=record.object_key,
            expires_at=signed.expires_at,
        )
        return _Outcome(signed, signed_at, record.id, renewed=True)

    def _persist(self, record: ResourceRecord, signed: SignedURL, signed_at: int) -> None:
        updated = record.replace(
            signed_url=signed.url, url_expires_at=signed.expires_at, url_signed_at=signed_at
        )
        try:
            self.store.save(updated)
        except PersistenceFailed:
            increment("url.persist.failed")
            log_event("url.persist_failed", resource_id=record.id)
            logger.warning("keeping signed URL for %s in memory until it can be saved", record.id)
            with self._lock:
                self._pending[record.id] = (signed, signed_at)
            return
        with self._lock:
            self._pending.pop(record.id, None)
