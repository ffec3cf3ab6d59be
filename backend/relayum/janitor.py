from __future__ import annotations

import os
import threading
from typing import Any

from flask import Flask, current_app

from .anonymous.service import purge_expired_anonymous
from .common.audit import audit
from .extensions import db
from .files.service import purge_expired_files
from .models import utc_now


class JanitorScheduler:
    def __init__(self, app: Flask, interval_seconds: int) -> None:
        self._app = app
        self._interval_seconds = max(5, int(interval_seconds))
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="relayum-janitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            with self._app.app_context():
                try:
                    run_janitor_cycle()
                except Exception as error:  # pragma: no cover - runtime logging
                    self._app.logger.warning("janitor cycle failed: %s", error)
                    db.session.rollback()
            self._stop_event.wait(self._interval_seconds)


def run_janitor_cycle() -> dict[str, Any]:
    now = utc_now()
    result = {
        "anonymous_shares": purge_expired_anonymous(now),
        "files": purge_expired_files(now),
    }
    if result["anonymous_shares"] or result["files"]:
        audit(action="janitor.purge", target_type="system", details=result)
        db.session.commit()
    current_app.logger.info(
        "janitor purged %s anonymous shares and %s expired files", result["anonymous_shares"], result["files"]
    )
    return result


def should_start_janitor(app: Flask) -> bool:
    if app.config.get("TESTING"):
        return False

    if app.debug:
        return os.environ.get("WERKZEUG_RUN_MAIN") == "true"
    return True


def start_janitor(app: Flask) -> JanitorScheduler | None:
    if not should_start_janitor(app):
        return None
    scheduler = JanitorScheduler(app=app, interval_seconds=int(app.config["JANITOR_INTERVAL_SECONDS"]))
    scheduler.start()
    return scheduler
