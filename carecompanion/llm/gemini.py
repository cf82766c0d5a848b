"""
carecompanion/llm/gemini.py — Gemini ``generateContent`` REST client.

A thin, synchronous client over :mod:`requests` with urllib3 retry/backoff on
transient HTTP statuses. Any failure (missing key, transport or HTTP
error, empty or blocked candidate) surfaces as
:class:`GenerationUnavailableError` so callers need exactly one recovery path.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests

from carecompanion.core.config import GenerationConfig
from carecompanion.core.http import build_session

logger = logging.getLogger(__name__)


class GenerationUnavailableError(RuntimeError):
    """The generative-language endpoint could not produce a reply."""


class GeminiClient:
    """
    Client for the Gemini ``models/{model}:generateContent`` endpoint.

    Args:
        config: Model, endpoint, and sampling configuration.
        api_key: Explicit key; defaults to the environment variable named in
            ``config.api_key_env``.
        session: Optional pre-built HTTP session (tests inject a mock).
    """

    def __init__(
        self,
        config: GenerationConfig,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._cfg = config
        self._api_key = api_key if api_key is not None else config.api_key
        self._session = session or build_session(config.max_retries)

    @property
    def available(self) -> bool:
        """True when an API key is configured."""
        return bool(self._api_key)

    def generate(self, prompt: str) -> str:
        """
        Send *prompt* and return the first candidate's text.

        Raises:
            GenerationUnavailableError: On any failure to obtain non-empty text.
        """
        if not self._api_key:
            raise GenerationUnavailableError("no API key configured")

        url = f"{self._cfg.base_url.rstrip('/')}/models/{self._cfg.model}:generateContent"
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": float(self._cfg.temperature),
                "maxOutputTokens": int(self._cfg.max_output_tokens),
            },
        }
        t0 = time.perf_counter()
        try:
            resp = self._session.post(
                url,
                params={"key": self._api_key},
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self._cfg.timeout_s,
            )
        except requests.RequestException as exc:
            raise GenerationUnavailableError(f"request failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning("Gemini HTTP %d: %s", resp.status_code, resp.text[:300])
            raise GenerationUnavailableError(f"Gemini HTTP {resp.status_code}")

        try:
            data: dict[str, Any] = resp.json() or {}
        except ValueError as exc:
            raise GenerationUnavailableError("invalid JSON from Gemini") from exc

        text = self._extract_text(data)
        logger.info(
            "Gemini reply in %.0f ms (%d chars)",
            (time.perf_counter() - t0) * 1000.0, len(text),
        )
        return text

    @staticmethod
    def _extract_text(data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback")
            raise GenerationUnavailableError(f"no candidates (feedback={feedback})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text", "")) for p in parts).strip()
        if not text:
            raise GenerationUnavailableError(
                f"empty candidate (finishReason={candidates[0].get('finishReason')})"
            )
        return text
