from __future__ import annotations

from flask import current_app, has_request_context, request


def client_ip() -> str | None:
    if not has_request_context():
        return None
    for header in current_app.config.get("TRUST_PROXY_HEADERS") or []:
        value = (request.headers.get(header) or "").strip()
        if value:
            return value.split(",", 1)[0].strip()
    return request.remote_addr or None


def client_user_agent() -> str | None:
    if not has_request_context():
        return None
    value = (request.headers.get("User-Agent") or "").strip()
    return value[:512] or None
