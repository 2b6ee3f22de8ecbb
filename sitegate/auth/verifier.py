from __future__ import annotations

import asyncio
import logging

from sitegate.auth import github
from sitegate.auth.config import AuthConfig
from sitegate.auth.errors import ExternalValidationFailed

logger = logging.getLogger(__name__)


class TokenVerifier:
    """
    Confirms a provider access token before anything local is trusted.

    Every failure (rejection, network error, timeout) raises the same
    `ExternalValidationFailed`. No retries.
    """

    def __init__(self, cfg: AuthConfig) -> None:
        self._cfg = cfg

    async def verify(self, access_token: str) -> None:
        timeout = self._cfg.github_validate_timeout_seconds
        try:
            await asyncio.wait_for(
                asyncio.to_thread(github.validate_token, self._cfg, access_token, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Token validation timed out after %.1fs", timeout)
            raise ExternalValidationFailed("timeout") from None
        except Exception as e:
            # str(e) never contains the token; github.* keeps messages to status codes.
            logger.warning("Token validation failed: %s", str(e))
            raise ExternalValidationFailed("rejected") from e
