"""Credential Manager — short-lived bearer tokens from an external helper.

Tokens are minted by a pre-authenticated command-line helper (gcloud by
default) and cached in memory only:
  - never written to disk, never logged
  - shape-validated before they are cached or sent anywhere
  - reused until 5 minutes before the assumed 1-hour expiry
  - re-minted when the last validation is older than 10 minutes, so a
    revoked token is noticed without waiting for expiry

The manager is owned by the gateway and injected into adapters. Concurrent
``get_token()`` calls may both refresh; the later write simply replaces
one valid token with another, so no lock is taken.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from promptgate.core.config import settings
from promptgate.gateway.cancellation import CancellationToken
from promptgate.gateway.errors import CredentialUnavailable

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s")

MIN_TOKEN_LENGTH = 20  # exclusive
MAX_TOKEN_LENGTH = 5000  # exclusive


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[[Sequence[str], "CancellationToken | None"], Awaitable[CommandResult]]


async def run_command(args: Sequence[str], cancel_token: CancellationToken | None = None) -> CommandResult:
    """Run a short helper command and capture its output."""
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        if cancel_token is not None:
            stdout, stderr = await cancel_token.run(proc.communicate())
        else:
            stdout, stderr = await proc.communicate()
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
    return CommandResult(
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def is_valid_token_format(token: str) -> bool:
    """Basic shape check: bounded length, no embedded whitespace."""
    return MIN_TOKEN_LENGTH < len(token) < MAX_TOKEN_LENGTH and not _WHITESPACE.search(token)


@dataclass
class Credential:
    """A cached bearer token. The token is excluded from repr()."""

    token: str = field(repr=False)
    expires_at: float
    validated_at: float


class CredentialManager:
    """In-memory cache around a credential helper command."""

    def __init__(
        self,
        helper_executable: str | None = None,
        runner: CommandRunner = run_command,
        clock: Callable[[], float] = time.time,
        lifetime_seconds: int | None = None,
        refresh_buffer_seconds: int | None = None,
        revalidate_seconds: int | None = None,
    ):
        self.helper_executable = helper_executable or settings.credential_helper_executable
        self._runner = runner
        self._clock = clock
        self.lifetime_seconds = lifetime_seconds if lifetime_seconds is not None else settings.token_lifetime_seconds
        self.refresh_buffer_seconds = (
            refresh_buffer_seconds if refresh_buffer_seconds is not None else settings.token_refresh_buffer_seconds
        )
        self.revalidate_seconds = (
            revalidate_seconds if revalidate_seconds is not None else settings.token_revalidate_seconds
        )
        self._credential: Credential | None = None

    @property
    def token_commands(self) -> list[list[str]]:
        # Application Default Credentials first, then the user account
        return [
            [self.helper_executable, "auth", "application-default", "print-access-token"],
            [self.helper_executable, "auth", "print-access-token"],
        ]

    @property
    def has_cached_token(self) -> bool:
        return self._credential is not None

    async def get_token(self, cancel_token: CancellationToken | None = None) -> str | None:
        """Return a usable bearer token, or None if none can be minted."""
        now = self._clock()
        cached = self._credential

        if cached is not None and now < cached.expires_at - self.refresh_buffer_seconds:
            if now - cached.validated_at <= self.revalidate_seconds:
                return cached.token

            fresh = await self._fetch_new_token(cancel_token)
            if fresh:
                return fresh
            # Still inside the expiry window; the API rejects it if it was revoked
            logger.info("Credential revalidation failed; reusing cached token until expiry")
            return cached.token

        return await self._fetch_new_token(cancel_token)

    def clear_token(self) -> None:
        """Drop the cached token (logout, or after the backend rejected it)."""
        if self._credential is not None:
            logger.info("Clearing cached credential")
        self._credential = None

    async def is_available(self, cancel_token: CancellationToken | None = None) -> bool:
        """True when the helper reports at least one ACTIVE account."""
        try:
            result = await self._runner(
                [self.helper_executable, "auth", "list", "--format=json"],
                cancel_token,
            )
        except OSError as e:
            logger.debug("Credential helper not runnable: %s", e)
            return False

        if result.returncode != 0:
            return False
        try:
            accounts = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("Credential helper returned unparseable account list")
            return False
        return isinstance(accounts, list) and any(
            isinstance(a, dict) and a.get("status") == "ACTIVE" for a in accounts
        )

    async def unavailable_error(
        self,
        api_key_env: str = "GEMINI_API_KEY",
        cancel_token: CancellationToken | None = None,
    ) -> CredentialUnavailable:
        """Build the error raised when neither credential path works."""
        helper = self.helper_executable
        if await self.is_available(cancel_token):
            remediation = (
                f"{helper} is installed but did not return a usable token. Please run:\n"
                f"  {helper} auth login\n"
                f"  {helper} auth application-default login\n\n"
                f"Alternatively, set the {api_key_env} environment variable."
            )
        else:
            remediation = (
                f"Install and authenticate the '{helper}' CLI:\n"
                f"  1. Install: https://cloud.google.com/sdk/docs/install\n"
                f"  2. Run: {helper} auth login\n"
                f"  3. Run: {helper} auth application-default login\n\n"
                f"Alternatively, set the {api_key_env} environment variable."
            )
        return CredentialUnavailable("No credential available for the streaming backend.", remediation)

    async def _fetch_new_token(self, cancel_token: CancellationToken | None) -> str | None:
        for args in self.token_commands:
            try:
                result = await self._runner(args, cancel_token)
            except OSError as e:
                logger.debug("Credential helper %s not runnable: %s", args[0], e)
                continue

            if result.returncode != 0:
                stderr = result.stderr.strip()
                if "not found" not in stderr and "not installed" not in stderr:
                    logger.warning("Credential helper %s failed: %s", " ".join(args[1:]), stderr[:300])
                continue

            token = result.stdout.strip()
            if not is_valid_token_format(token):
                logger.warning("Credential helper returned a token with an invalid shape; ignoring it")
                continue

            now = self._clock()
            self._credential = Credential(
                token=token,
                expires_at=now + self.lifetime_seconds,
                validated_at=now,
            )
            logger.debug("Minted new credential via '%s'", " ".join(args[1:]))
            return token

        return None
