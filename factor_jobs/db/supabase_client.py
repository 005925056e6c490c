"""Service-role Supabase client singleton."""

import asyncio
import functools
from typing import Any, Callable, TypeVar

from supabase import create_client, Client
from factor_jobs.config import settings

_client: Client | None = None

T = TypeVar("T")


def get_supabase() -> Client:
    """Get or create the Supabase client using service role key."""
    global _client
    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
            )
        _client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
    return _client


async def run_blocking(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous Supabase call in the default thread executor.

    The supabase client is blocking; job code runs on the event loop and must
    not stall other jobs while a row is written.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
