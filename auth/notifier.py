"""
auth/notifier.py -- Delivery side-channel for reset and verification links.

Real email delivery is out of scope. LoggingNotifier builds the link the
front end expects and writes it to the "identitycore.notify" logger, which
is enough to drive the flows by hand in development.

Notifier calls are fire-and-forget from the service's point of view:
AuthService logs any exception raised here and carries on.
"""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import urlencode

logger = logging.getLogger("identitycore.notify")


class Notifier(Protocol):
    def send_reset_link(self, email: str, token: str) -> None: ...

    def send_verification_link(self, email: str, token: str) -> None: ...


class LoggingNotifier:
    def __init__(self, base_url: str = "http://localhost:3000") -> None:
        self.base_url = base_url.rstrip("/")

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token})}"

    def send_reset_link(self, email: str, token: str) -> None:
        logger.info("Password reset link for %s: %s", email, self._link("/reset-password", token))

    def send_verification_link(self, email: str, token: str) -> None:
        logger.info("Email verification link for %s: %s", email, self._link("/verify-email", token))
