from __future__ import annotations

import hashlib
import hmac
import logging
import random
from typing import Any, Protocol, Sequence

import httpx

from cineblend_core.types import RecommendOptions, ScoredRecommendation, UserId

log = logging.getLogger(__name__)


class Telemetry(Protocol):
    async def log_recommendations(
        self,
        *,
        query_id: str,
        user_id: UserId,
        mode: str,
        options: RecommendOptions,
        results: Sequence[ScoredRecommendation],
        degraded: Sequence[str] = (),
    ) -> None: ...


class NoopTelemetry:
    async def log_recommendations(self, **_: Any) -> None:
        return None


class RecTelemetry:
    """
    Best-effort recommendation telemetry over the Supabase REST API.

    - rec_queries: one row per recommend() call
    - rec_results: one row per ranked item, with the score breakdown

    Failures are logged, never raised.
    """

    def __init__(
        self,
        supabase_url: str,
        api_key: str,
        *,
        sample: float = 1.0,
        timeout_s: float = 5.0,
        hash_secret: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.api_key = api_key
        self.sample = float(max(0.0, min(1.0, sample)))
        self.timeout_s = timeout_s
        self.hash_secret = hash_secret or api_key or "dev"
        self._transport = transport

    def _enabled(self) -> bool:
        return bool(self.supabase_url and self.api_key and self.sample > 0)

    def _sampled(self) -> bool:
        return self.sample >= 1.0 or random.random() < self.sample

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "resolution=merge-duplicates",
        }

    def hash_user_id(self, user_id: UserId) -> str:
        return hmac.new(
            self.hash_secret.encode("utf-8"), str(user_id).encode("utf-8"), hashlib.sha256
        ).hexdigest()

    async def _post(
        self, client: httpx.AsyncClient, path: str, payload: list[dict[str, Any]]
    ) -> None:
        if not payload:
            return
        try:
            r = await client.post(
                f"{self.supabase_url}/rest/v1/{path}",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout_s,
            )
            if r.status_code not in (200, 201, 204):
                log.warning("rec telemetry POST %s failed %s: %s", path, r.status_code, r.text[:300])
        except httpx.HTTPError as e:
            log.warning("rec telemetry POST %s error: %s", path, e)

    async def log_recommendations(
        self,
        *,
        query_id: str,
        user_id: UserId,
        mode: str,
        options: RecommendOptions,
        results: Sequence[ScoredRecommendation],
        degraded: Sequence[str] = (),
    ) -> None:
        if not self._enabled() or not self._sampled():
            return
        query_row = {
            "query_id": query_id,
            "hashed_user_id": self.hash_user_id(user_id),
            "mode": mode,
            "batch_size": options.top_k,
            "request_meta": {
                "exclude_rated": options.exclude_rated,
                "min_user_rating": options.min_user_rating,
                "weights": options.weights or {},
                "degraded": list(degraded),
            },
        }
        result_rows = [
            {
                "query_id": query_id,
                "media_id": r.id,
                "rank": rank,
                "title": r.title,
                "score_final": r.recommendation_score,
                "score_parts": r.score_breakdown.model_dump() if r.score_breakdown else None,
                "match_reason": r.match_reason,
            }
            for rank, r in enumerate(results, start=1)
        ]
        async with httpx.AsyncClient(transport=self._transport) as client:
            await self._post(client, "rec_queries", [query_row])
            await self._post(client, "rec_results", result_rows)
