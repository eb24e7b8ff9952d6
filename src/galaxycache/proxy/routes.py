"""Maps repository-relative request paths onto asset kinds."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Pattern
from urllib.parse import parse_qsl

from .kinds import AssetKind


@dataclass(frozen=True)
class ProxyRequest:
    """A client request with the repository prefix already removed."""

    path: str
    query: str = ""

    @property
    def uri(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path


@dataclass(frozen=True)
class RouteMatch:
    kind: AssetKind
    tokens: dict[str, str] = field(default_factory=dict)
    origin: str = "upstream"
    upstream_uri: str = ""


@dataclass(frozen=True)
class Route:
    kind: AssetKind
    pattern: Pattern[str]
    query_tokens: dict[str, str] = field(default_factory=dict)
    required_query: tuple[str, ...] = ()
    origin: str = "upstream"


_SEGMENT = r"[^/]+"
_COLLECTION_PART = r"[a-z0-9_]+"

DEFAULT_ROUTES: tuple[Route, ...] = (
    Route(
        AssetKind.ROLE,
        re.compile(r"^api/v1/roles/$"),
        query_tokens={"owner__username": "group", "name": "name", "page": "page"},
        required_query=("owner__username", "name"),
    ),
    Route(
        AssetKind.ROLE_VERSION_LIST,
        re.compile(r"^api/v1/roles/(?P<id>\d+)/versions/$"),
        query_tokens={"page": "page"},
    ),
    Route(
        AssetKind.COLLECTION_VERSION,
        re.compile(rf"^api/v2/collections/(?P<group>{_SEGMENT})/(?P<name>{_SEGMENT})/versions/(?P<version>{_SEGMENT})/$"),
    ),
    Route(
        AssetKind.COLLECTION_VERSION_LIST,
        re.compile(rf"^api/v2/collections/(?P<group>{_SEGMENT})/(?P<name>{_SEGMENT})/versions/$"),
        query_tokens={"page": "page"},
    ),
    Route(
        AssetKind.ARTIFACT,
        re.compile(
            rf"^download/(?P<group>{_COLLECTION_PART})-(?P<name>{_COLLECTION_PART})-(?P<version>[^/]+)\.tar\.gz$"
        ),
    ),
    Route(
        AssetKind.ARTIFACT,
        re.compile(rf"^download/(?P<group>{_SEGMENT})/(?P<name>{_SEGMENT})/archive/(?P<version>[^/]+)\.tar\.gz$"),
        origin="github",
    ),
    Route(AssetKind.API_INTERNALS, re.compile(r"^api(/.*)?$")),
)


class RouteMatcher:
    def __init__(self, routes: tuple[Route, ...] = DEFAULT_ROUTES) -> None:
        self._routes = routes

    def match(self, request: ProxyRequest) -> Optional[RouteMatch]:
        path = request.path.lstrip("/")
        params = dict(parse_qsl(request.query, keep_blank_values=True))
        for route in self._routes:
            found = route.pattern.match(path)
            if found is None:
                continue
            if any(not params.get(name) for name in route.required_query):
                continue
            tokens = {key: value for key, value in found.groupdict().items() if value is not None}
            for param, token in route.query_tokens.items():
                if params.get(param):
                    tokens[token] = params[param]
            tokens["origin"] = route.origin
            return RouteMatch(
                kind=route.kind,
                tokens=tokens,
                origin=route.origin,
                upstream_uri=self._upstream_uri(route, path, request.query),
            )
        return None

    @staticmethod
    def _upstream_uri(route: Route, path: str, query: str) -> str:
        if route.origin == "github":
            path = path[len("download/") :]
        return f"{path}?{query}" if query else path
