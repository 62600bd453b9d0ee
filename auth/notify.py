"""
auth/notify.py -- Outbound delivery of MFA codes and password-reset tokens.

The core only generates and verifies codes. Delivering them (email, SMS,
push) belongs to the host application, which passes a Notifier to the
session manager. LogNotifier is the default: it records that a delivery was
requested and never writes the code or token itself to the log.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import Principal

logger = logging.getLogger("gatehouse.auth")


class Notifier(Protocol):
    def send_mfa_code(self, principal: Principal, code: str, expires_at: float) -> None: ...

    def send_password_reset(self, principal: Principal, token: str, expires_at: float) -> None: ...


class LogNotifier:
    def send_mfa_code(self, principal: Principal, code: str, expires_at: float) -> None:
        logger.info("MFA code issued for %r (no delivery channel configured)", principal.identifier)

    def send_password_reset(self, principal: Principal, token: str, expires_at: float) -> None:
        logger.info("Password reset token issued for %r (no delivery channel configured)", principal.identifier)
