"""Issuance and validation of opaque API keys."""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timezone

from calendar_backend.domain.models import TokenUsage

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


class AccessRegistry:
    """In-memory API keys with usage bookkeeping.

    ``validate`` is not a pure check: every successful call records the time
    and bumps the request counter.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, TokenUsage] = {}
        self._lock = threading.Lock()

    def issue(self) -> str:
        token = secrets.token_hex(TOKEN_BYTES)
        with self._lock:
            self._tokens[token] = TokenUsage()
        logger.info("Issued API key %s…", token[:6])
        return token

    def validate(self, token: str | None) -> bool:
        if not token:
            return False
        with self._lock:
            usage = self._tokens.get(token)
            if usage is None:
                return False
            usage.last_used = datetime.now(timezone.utc)
            usage.requests += 1
        return True

    def usage(self, token: str) -> TokenUsage | None:
        with self._lock:
            usage = self._tokens.get(token)
            return usage.model_copy() if usage is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
