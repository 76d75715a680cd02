"""
Async Session Manager for the meetings API

Centralized HTTP session pooling using aiohttp for upstream calls.

- One shared session per upstream name, created lazily
- Connection reuse across every window and page of a run
- Explicit cleanup on shutdown via close_all()
"""

import aiohttp
from typing import Any, Dict

from config import get_logger

logger = get_logger(__name__).bind(component="upstream")


class AsyncSessionManager:
    """
    Manages aiohttp client sessions for upstream APIs.

    Sessions are created lazily and reused until close_all() is called.
    close_all() resets the manager so a later run in the same process
    (tests, repeated CLI invocations) can open fresh sessions.
    """

    _sessions: Dict[str, aiohttp.ClientSession] = {}

    @classmethod
    async def get_session(cls, upstream: str, timeout_total: int = 30) -> aiohttp.ClientSession:
        """
        Get or create aiohttp session for an upstream.

        Args:
            upstream: Upstream name (e.g., "ndl")
            timeout_total: Total timeout in seconds (default: 30s)

        Returns:
            Shared aiohttp.ClientSession for the upstream
        """
        if upstream not in cls._sessions or cls._sessions[upstream].closed:
            timeout = aiohttp.ClientTimeout(
                total=timeout_total,
                connect=10,
                sock_read=timeout_total,
            )

            # The meetings API is a single host; keep the pool small
            connector = aiohttp.TCPConnector(
                limit=4,
                limit_per_host=2,
                ttl_dns_cache=300,
                enable_cleanup_closed=True,
            )

            headers = {
                "User-Agent": "dietwatch/0.1 (+https://kokkai.ndl.go.jp/api.html)",
                "Accept": "application/json",
                "Accept-Encoding": "gzip, deflate",
            }

            cls._sessions[upstream] = aiohttp.ClientSession(
                timeout=timeout,
                connector=connector,
                headers=headers,
                raise_for_status=False,  # status handled by the fetcher
            )

            logger.debug(
                "created async session",
                upstream=upstream,
                timeout_seconds=timeout_total,
            )

        return cls._sessions[upstream]

    @classmethod
    async def close_all(cls):
        """Close all active sessions (cleanup on shutdown)."""
        if not cls._sessions:
            return

        logger.info("closing async sessions", session_count=len(cls._sessions))

        for upstream, session in cls._sessions.items():
            if not session.closed:
                await session.close()
                logger.debug("closed async session", upstream=upstream)

        cls._sessions.clear()

    @classmethod
    def get_stats(cls) -> Dict[str, Any]:
        """Get statistics about active sessions"""
        return {
            "total_sessions": len(cls._sessions),
            "upstreams": {
                name: {"closed": session.closed}
                for name, session in cls._sessions.items()
            },
        }
