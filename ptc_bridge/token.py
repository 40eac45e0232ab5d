"""Execution tokens: the only credential a sandboxed execution receives.

Tokens are HS256 JWTs carrying the execution context plus ``iat``, ``exp``
and ``aud``. Issue and verify read the same injected clock. Clock skew
between the issuing and verifying hosts is not compensated, so deployments
that split them across machines must keep their clocks synchronized.
"""

import logging
import time
import uuid
from typing import Callable

import jwt

from .types import ExecutionContext, TokenConfig

logger = logging.getLogger(__name__)


class ExecutionTokenService:
    """Issues and verifies signed, time-boxed execution tokens."""

    def __init__(self, config: TokenConfig, clock: Callable[[], float] = time.time):
        """
        Args:
            config: Signing secret, lifetime, audience and algorithm
            clock: Seconds since the epoch; shared by issue and verify
        """
        if not config.secret_key:
            raise ValueError("TokenConfig.secret_key must not be empty")
        self.config = config
        self._clock = clock

    def issue(self, context: ExecutionContext) -> str:
        """Create a token for ``context`` that expires after ``expiration_seconds``.

        Args:
            context: Execution context to encode

        Returns:
            Signed token string
        """
        # exp stays fractional so expiry is exact to the clock, not the second
        issued_at = self._clock()
        payload = {
            **context.to_claims(),
            "sub": context.user_id,
            "iat": int(issued_at),
            "exp": issued_at + self.config.expiration_seconds,
            "aud": self.config.audience,
        }
        return jwt.encode(payload, self.config.secret_key, algorithm=self.config.algorithm)

    def verify(self, token: str | None) -> ExecutionContext | None:
        """Decode ``token`` back into its execution context.

        Returns None for every kind of failure (bad signature, wrong audience,
        expired, malformed). The reason is only ever written to the debug log.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                audience=self.config.audience,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["exp", "iat", "aud"],
                },
            )
            if self._clock() >= payload["exp"]:
                raise jwt.ExpiredSignatureError("Signature has expired")
            return ExecutionContext.from_claims(payload)
        except (jwt.InvalidTokenError, KeyError, TypeError, ValueError) as e:
            if self.config.log_verification_failures:
                logger.debug(f"Execution token rejected: {type(e).__name__}: {e}")
            return None


def issue_execution_token(
    context: ExecutionContext,
    config: TokenConfig,
    clock: Callable[[], float] = time.time
) -> str:
    return ExecutionTokenService(config, clock).issue(context)


def verify_execution_token(
    token: str | None,
    config: TokenConfig,
    clock: Callable[[], float] = time.time
) -> ExecutionContext | None:
    return ExecutionTokenService(config, clock).verify(token)


def generate_session_id() -> str:
    """Random session identifier, ``session-<millis>-<random>``"""
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def parse_auth_header(header: str | None) -> str | None:
    """Extract the token from ``Authorization: Bearer <token>``"""
    if not header or not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None
