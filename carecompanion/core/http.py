"""
carecompanion/core/http.py — Shared HTTP session factory.

Both remote collaborators (Gemini, Supabase) go through a
:class:`requests.Session` mounted with urllib3 retry/backoff on 429 and 5xx.
"""

from __future__ import annotations

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


def build_session(max_retries: int = 2) -> requests.Session:
    """
    Create a :class:`requests.Session` with retry/backoff on transient statuses.

    Args:
        max_retries: Total retry attempts per request.
    """
    session = requests.Session()
    retry = Retry(
        total=max_retries,
        connect=max_retries,
        read=max_retries,
        status=max_retries,
        backoff_factor=0.35,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "POST", "PATCH"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session
