"""Fetch-through cache orchestration for galaxy repository requests."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import ProxySettings
from ..storage.content import CacheInfo, Content
from ..storage.metadata import MetadataStore
from .kinds import InvalidAssetKindError, Persistence, coerce_kind, identity_from_tokens, policy_for
from .rewrite import RewriteTargets, rewrite_stream
from .routes import ProxyRequest, RouteMatch, RouteMatcher
from .upstream import UpstreamClient, UpstreamError, UpstreamResponse


LOGGER = structlog.get_logger("galaxycache.proxy")
TRACER = trace.get_tracer("galaxycache.proxy")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("galaxycache_requests_total", "Proxied repository requests", labelnames=("kind",))
)
LOOKUP_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "galaxycache_cache_lookups_total",
        "Cache lookups by result: hit, miss, stale or bypass",
        labelnames=("kind", "result"),
    )
)
UPSTREAM_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "galaxycache_upstream_fetches_total",
        "Upstream fetches by outcome: ok, not_modified or error",
        labelnames=("kind", "outcome"),
    )
)
STALE_SERVE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("galaxycache_stale_serves_total", "Cached copies served because the upstream failed", labelnames=("kind",))
)
BYTES_STORED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("galaxycache_bytes_stored_total", "Bytes written to the blob store", labelnames=("kind",))
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProxyCache:
    """Runs classify, cache lookup, fetch, rewrite, store and serve for one request at a time.

    Instances hold no per-request state and are shared by concurrent requests.
    """

    def __init__(
        self,
        settings: ProxySettings,
        store: MetadataStore,
        upstream: UpstreamClient,
        matcher: Optional[RouteMatcher] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._upstream = upstream
        self._matcher = matcher or RouteMatcher()
        self._bucket = settings.repository_name
        self._targets = RewriteTargets(
            upstream_url=settings.upstream_url,
            repository_url=settings.repository_url,
            repository_path=settings.repository_path,
            github_url=settings.github_url,
        )

    def classify(self, request: ProxyRequest) -> Optional[RouteMatch]:
        match = self._matcher.match(request)
        if match is None:
            return None
        kind = coerce_kind(match.kind)
        return match if kind is match.kind else replace(match, kind=kind)

    def asset_path(self, match: RouteMatch) -> Optional[str]:
        policy = policy_for(match.kind)
        if policy.asset_path is None:
            return None
        try:
            return policy.asset_path(match.tokens)
        except KeyError as exc:
            raise InvalidAssetKindError(
                f"Route for {match.kind.value} is missing token {exc.args[0]!r}"
            ) from exc

    async def lookup_cached(self, match: RouteMatch) -> Optional[Content]:
        if not policy_for(match.kind).cacheable:
            return None
        return await self._store.get_asset_content(self._bucket, self.asset_path(match))

    async def fetch_and_store(self, match: RouteMatch, upstream: UpstreamResponse) -> Content:
        """Rewrite the upstream body for its kind and persist it, or hand it back live for uncached kinds."""

        policy = policy_for(match.kind)
        rewritten = rewrite_stream(policy.rewrite(self._targets), upstream.iter_bytes())

        if policy.persistence is Persistence.NONE:

            async def _release() -> None:
                await rewritten.aclose()
                await upstream.aclose()

            LOGGER.debug("live_passthrough", kind=match.kind.value, url=upstream.url)
            return Content(
                content_type=upstream.content_type,
                opener=lambda: rewritten,
                last_modified=upstream.last_modified,
                closer=_release,
            )

        path = self.asset_path(match)
        async with self._store.temp_blob(rewritten) as staged:
            if policy.persistence is Persistence.COMPONENT:
                content = await self._store.maybe_create_and_save_component(
                    self._bucket,
                    identity_from_tokens(match.tokens),
                    path,
                    match.kind,
                    staged,
                    upstream.content_type,
                    upstream.attributes,
                )
            else:
                content = await self._store.maybe_create_and_save_asset(
                    self._bucket,
                    path,
                    match.kind,
                    staged,
                    upstream.content_type,
                    upstream.attributes,
                )
            BYTES_STORED_COUNTER.inc(staged.size, kind=match.kind.value)
        return content

    async def revalidate(self, content: Content, cache_info: CacheInfo) -> None:
        """Record that the upstream confirmed ``content`` is current; the stored bytes are not touched."""

        if content.asset_name is None:
            return
        await self._store.set_cache_info(self._bucket, content.asset_name, cache_info)

    def is_stale(self, match: RouteMatch, content: Content) -> bool:
        policy = policy_for(match.kind)
        if policy.metadata:
            max_age = self._settings.metadata_max_age_seconds
        else:
            max_age = self._settings.artifact_max_age_seconds
        if max_age is None or max_age < 0:
            return False
        if content.cache_info is None:
            return True
        return content.cache_info.last_verified + timedelta(seconds=max_age) <= _utcnow()

    async def get(self, request: ProxyRequest) -> Optional[Content]:
        match = self.classify(request)
        if match is None:
            return None
        kind = match.kind.value
        REQUEST_COUNTER.inc(kind=kind)
        attributes = {"galaxycache.kind": kind, "galaxycache.uri": request.uri}
        with TRACER.start_as_current_span("proxy_cache.get", attributes=attributes) as span:
            cacheable = policy_for(match.kind).cacheable
            cached = await self.lookup_cached(match)
            if cached is not None and not self.is_stale(match, cached):
                LOOKUP_COUNTER.inc(kind=kind, result="hit")
                span.set_attribute("galaxycache.cache_hit", True)
                LOGGER.debug("cache_hit", kind=kind, asset=cached.asset_name)
                return cached
            span.set_attribute("galaxycache.cache_hit", False)
            if not cacheable:
                LOOKUP_COUNTER.inc(kind=kind, result="bypass")
            elif cached is None:
                LOOKUP_COUNTER.inc(kind=kind, result="miss")
                LOGGER.debug("cache_miss", kind=kind, uri=request.uri)
            else:
                LOOKUP_COUNTER.inc(kind=kind, result="stale")

            validator = cached.cache_info.validator if cached is not None and cached.cache_info else None
            try:
                upstream = await self._upstream.fetch(
                    match.upstream_uri,
                    origin=match.origin,
                    validator=validator,
                    last_modified=cached.last_modified if cached is not None else None,
                )
            except UpstreamError as exc:
                UPSTREAM_COUNTER.inc(kind=kind, outcome="error")
                if cached is not None:
                    STALE_SERVE_COUNTER.inc(kind=kind)
                    LOGGER.warning("serving_stale_content", asset=cached.asset_name, error=str(exc))
                    return cached
                LOGGER.warning("upstream_fetch_failed", uri=match.upstream_uri, status=exc.status_code, error=str(exc))
                return None

            if upstream.not_modified:
                UPSTREAM_COUNTER.inc(kind=kind, outcome="not_modified")
                if cached is None:
                    return None
                cache_info = CacheInfo(last_verified=_utcnow(), validator=validator)
                await self.revalidate(cached, cache_info)
                LOGGER.debug("cache_revalidated", asset=cached.asset_name)
                return replace(cached, cache_info=cache_info)
            UPSTREAM_COUNTER.inc(kind=kind, outcome="ok")

            if not cacheable:
                return await self.fetch_and_store(match, upstream)
            async with upstream:
                return await self.fetch_and_store(match, upstream)
