"""Helpers that describe the calling client from the Flask request."""
from __future__ import annotations

import re
from typing import Optional

from flask import current_app, request

_BROWSER_RE = re.compile(r"(Chrome|Firefox|Safari|Edge|Opera)/[\d.]+")
_OS_RE = re.compile(r"(Windows|Mac|Linux|iOS|Android)")


def client_ip() -> str:
    """Best-effort client address; proxy headers only count when TRUST_PROXY_HEADERS is on."""
    if current_app.config.get("TRUST_PROXY_HEADERS", False):
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip() or "unknown"
        real_ip = request.headers.get("X-Real-IP", "").strip()
        if real_ip:
            return real_ip
    return request.remote_addr or "unknown"


def user_agent() -> str:
    return request.headers.get("User-Agent") or "Unknown"


def device_info(agent: Optional[str], ip: Optional[str]) -> str:
    """Short human readable descriptor, e.g. 'Firefox/128.0 | Linux | IP: 10.0.0.4'."""
    info = []
    if agent:
        browser = _BROWSER_RE.search(agent)
        if browser:
            info.append(browser.group(0))
        os_match = _OS_RE.search(agent)
        if os_match:
            info.append(os_match.group(0))
    if ip:
        info.append(f"IP: {ip}")
    return " | ".join(info)[:255] or "Unknown Device"
