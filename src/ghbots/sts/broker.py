"""Single-use scoped credentials for one handler invocation.

A CredentialBroker owns at most one GitHub token for an (org, repo,
policy) triple:

- ``acquire`` performs the exchange lazily on first use. The exchange runs
  exactly once per broker, however many callers race on it; every caller
  observes the same token, or the same error.
- Tokens are never refreshed. A broker lives for one handler invocation.
- ``revoke`` is a no-op when no token was obtained. Otherwise it revokes
  the token in a detached scope, so cleanup survives cancellation of the
  request that owns the broker.
"""

import asyncio
import logging
from typing import Optional

from src.ghbots.detached import run_detached
from src.ghbots.sts.exchange import (
    CredentialError,
    TokenExchangeClient,
    TokenExchangeError,
    TokenRevocationError,
    scope_for,
)


logger = logging.getLogger(__name__)


class CredentialBroker:
    """Exchanges and revokes one scoped token.

    Attributes:
        org: GitHub organization.
        repo: Repository name, or "" for an org-wide token.
        policy_name: Octo STS trust policy name.

    Example:
        >>> broker = CredentialBroker(exchange, "acme", "widgets", "labeler")
        >>> token = await broker.acquire()
        >>> ...
        >>> await broker.revoke()
    """

    def __init__(
        self,
        exchange: TokenExchangeClient,
        org: str,
        repo: str,
        policy_name: str,
    ):
        self.org = org
        self.repo = repo
        self.policy_name = policy_name
        self._exchange = exchange
        # One-shot guard: the first acquire creates the task, every caller
        # awaits the same task and so observes the same result.
        self._task: Optional["asyncio.Task[str]"] = None
        self._revoked = False

    @property
    def scope(self) -> str:
        return scope_for(self.org, self.repo)

    @property
    def fetched(self) -> bool:
        """Whether a token was successfully obtained."""
        return (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.exception() is None
        )

    async def _fetch(self) -> str:
        logger.debug(
            "Getting octosts token for %s - %s",
            self.scope,
            self.policy_name,
            extra={"scope": self.scope, "policy_name": self.policy_name},
        )
        try:
            return await self._exchange.exchange(self.policy_name, self.org, self.repo)
        except TokenExchangeError:
            logger.error(
                "Failed to get octosts token for %s - %s",
                self.scope,
                self.policy_name,
                extra={"scope": self.scope, "policy_name": self.policy_name},
            )
            raise

    async def acquire(self) -> str:
        """Return the token, exchanging for it on first use.

        Raises:
            TokenExchangeError: If the exchange failed. The same error is
                raised to every caller, now and on later calls.
            CredentialError: If the broker was already revoked.
        """
        if self._revoked:
            raise CredentialError(
                "credential already revoked", self.scope, self.policy_name
            )
        if self._task is None:
            self._task = asyncio.ensure_future(self._fetch())
        # Shield so one cancelled caller does not fail the others.
        return await asyncio.shield(self._task)

    async def revoke(self) -> None:
        """Revoke the token if one was obtained.

        Safe to call more than once; only the first call does any work.

        Raises:
            TokenRevocationError: If revocation failed. The failure is also
                logged here, since callers commonly ignore close errors.
        """
        if self._revoked:
            return
        self._revoked = True

        if self._task is None:
            return  # Nothing was fetched, nothing to revoke.

        await run_detached(self._revoke_fetched(self._task), name=f"revoke-{self.scope}")

    async def _revoke_fetched(self, task: "asyncio.Task[str]") -> None:
        # An exchange still in flight may yet produce a token that needs revoking.
        await asyncio.wait({task})
        if task.cancelled() or task.exception() is not None:
            return
        token = task.result()

        try:
            await self._exchange.revoke(token, self.scope, self.policy_name)
        except TokenRevocationError as e:
            logger.error(
                "Failed to revoke token: %s",
                e,
                extra={
                    "scope": self.scope,
                    "policy_name": self.policy_name,
                    "status_code": e.status_code,
                },
            )
            raise

        logger.debug(
            "Revoked token",
            extra={"scope": self.scope, "policy_name": self.policy_name},
        )
