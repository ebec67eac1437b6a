"""Match authority -- the real-time match server that numbers and pushes events.

The reconcile pipeline only needs one call from it: re-send the events of a
sequence range that never arrived.  Backfill is best effort; when it fails
the gap stays open and the supervisor asks again later.
"""
import logging

import httpx

log = logging.getLogger(__name__)


class MatchAuthority:
    """Base class for match authority clients."""

    async def backfill(self, session_id: str, start: int, end: int) -> list[dict]:
        """Return raw events ``start..end`` (inclusive) of *session_id*.

        Implementations that redeliver through the push channel instead may
        return an empty list.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class NullMatchAuthority(MatchAuthority):
    """Used when no authority endpoint is configured; relies on redelivery."""

    async def backfill(self, session_id: str, start: int, end: int) -> list[dict]:
        log.info(
            "No match authority configured; waiting for redelivery of %s seq %d..%d",
            session_id, start, end,
        )
        return []


class HttpMatchAuthority(MatchAuthority):
    """Fetches missing events from ``GET /matches/{id}/events?from=&to=``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def backfill(self, session_id: str, start: int, end: int) -> list[dict]:
        try:
            resp = await self._client.get(
                f"/matches/{session_id}/events",
                params={"from": start, "to": end},
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning(
                "Backfill of %s seq %d..%d failed: %s", session_id, start, end, exc
            )
            return []

        events = body.get("events", []) if isinstance(body, dict) else body
        if not isinstance(events, list):
            log.warning("Backfill of %s returned an unexpected body", session_id)
            return []
        log.info(
            "Backfill of %s seq %d..%d returned %d events",
            session_id, start, end, len(events),
        )
        return events

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_match_authority(settings) -> MatchAuthority:
    if settings.MATCH_AUTHORITY_URL:
        return HttpMatchAuthority(
            settings.MATCH_AUTHORITY_URL,
            timeout=settings.MATCH_AUTHORITY_TIMEOUT_SECONDS,
        )
    return NullMatchAuthority()
