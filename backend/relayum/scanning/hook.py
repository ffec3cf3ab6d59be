from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import Union

from flask import Flask, current_app

from ..extensions import db
from ..models import AnonymousFile, File, VirusScanStatus, utc_now
from ..storage import anonymous_tenant, storage_engine, user_tenant
from ..storage.keys import anonymous_master_key, user_master_key


Scanner = Callable[[Iterator[bytes]], tuple[VirusScanStatus, str | None]]
Scannable = Union[type[File], type[AnonymousFile]]


def _decrypted_chunks(row: File | AnonymousFile) -> Iterator[bytes]:
    engine = storage_engine()
    if isinstance(row, AnonymousFile):
        return engine.stream_get(anonymous_tenant(row.share.share_token), anonymous_master_key(row.share), row.file_id)
    return engine.stream_get(user_tenant(row.owner_id), user_master_key(row.owner), row.file_id)


class ScanHook:
    def __init__(self, app: Flask, max_retries: int, synchronous: bool, retry_delay_seconds: float = 1.0) -> None:
        self._app = app
        self._max_retries = max(0, int(max_retries))
        self._synchronous = synchronous
        self._retry_delay_seconds = retry_delay_seconds
        self._scanner: Scanner | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._closed = False

    def register_scanner(self, scanner: Scanner | None) -> None:
        self._scanner = scanner

    def submit(self, row: File | AnonymousFile) -> None:
        model: Scannable = type(row)
        if self._scanner is None:
            current_app.logger.debug("no scanner registered; %s %s stays pending", model.__tablename__, row.id)
            return
        if self._synchronous:
            self._run(model, row.id)
            return
        with self._lock:
            if self._closed:
                current_app.logger.warning("scan hook is shut down; %s %s stays pending", model.__tablename__, row.id)
                return
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="scan-hook")
            self._executor.submit(self._run_in_context, model, row.id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and let queued scans finish when ``wait`` is set."""
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _run_in_context(self, model: Scannable, pk: int) -> None:
        with self._app.app_context():
            self._run(model, pk)

    def _run(self, model: Scannable, pk: int) -> None:
        scanner = self._scanner
        assert scanner is not None
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                row = db.session.get(model, pk)
                if row is None:
                    return
                status, threat = scanner(_decrypted_chunks(row))
                row.virus_scan_status = status
                row.threat_name = threat
                row.scanned_at = utc_now()
                db.session.commit()
                if status == VirusScanStatus.INFECTED:
                    self._app.logger.warning("%s %s flagged infected: %s", model.__tablename__, pk, threat)
                return
            except Exception as error:
                db.session.rollback()
                self._app.logger.warning(
                    "scan attempt %s/%s for %s %s failed: %s", attempt, attempts, model.__tablename__, pk, error
                )
                if attempt < attempts and self._retry_delay_seconds:
                    time.sleep(self._retry_delay_seconds * attempt)

        row = db.session.get(model, pk)
        if row is not None:
            row.virus_scan_status = VirusScanStatus.ERROR
            row.scanned_at = utc_now()
            db.session.commit()


def scan_hook() -> ScanHook:
    return current_app.extensions["relayum.scan_hook"]
