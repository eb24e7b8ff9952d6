"""Asset kinds served by the proxy and the per-kind handling table."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from .rewrite import (
    Replacer,
    RewriteTargets,
    no_rewrite,
    role_version_list_rewrite,
    upstream_url_rewrite,
)


class InvalidAssetKindError(RuntimeError):
    """Raised when a request or stored asset carries a kind outside ``AssetKind``.

    This is an internal consistency failure, not a client error, and is never retried.
    """


class AssetKind(str, enum.Enum):
    ROLE = "ROLE"
    ROLE_VERSION_LIST = "ROLE_VERSION_LIST"
    COLLECTION_VERSION_LIST = "COLLECTION_VERSION_LIST"
    COLLECTION_VERSION = "COLLECTION_VERSION"
    ARTIFACT = "ARTIFACT"
    API_INTERNALS = "API_INTERNALS"


class Persistence(enum.Enum):
    NONE = "none"
    ASSET = "asset"
    COMPONENT = "component"


@dataclass(frozen=True)
class PackageIdentity:
    """Natural key of a component: namespace/owner, name and version."""

    group: str
    name: str
    version: str


@dataclass(frozen=True)
class KindPolicy:
    asset_path: Optional[Callable[[Mapping[str, str]], str]]
    persistence: Persistence
    rewrite: Callable[[RewriteTargets], list[Replacer]]
    metadata: bool = True

    @property
    def cacheable(self) -> bool:
        return self.persistence is not Persistence.NONE


def _page(tokens: Mapping[str, str]) -> str:
    return tokens.get("page") or "1"


def _role_listing_path(tokens: Mapping[str, str]) -> str:
    return f"roles/{tokens['group']}/{tokens['name']}/page-{_page(tokens)}.json"


def _role_version_list_path(tokens: Mapping[str, str]) -> str:
    return f"roles/{tokens['id']}/versions/page-{_page(tokens)}.json"


def _collection_version_list_path(tokens: Mapping[str, str]) -> str:
    return f"collections/{tokens['group']}/{tokens['name']}/versions/page-{_page(tokens)}.json"


def _collection_version_path(tokens: Mapping[str, str]) -> str:
    return f"collections/{tokens['group']}/{tokens['name']}/{tokens['version']}/{tokens['version']}.json"


def _artifact_path(tokens: Mapping[str, str]) -> str:
    group, name, version = tokens["group"], tokens["name"], tokens["version"]
    if tokens.get("origin") == "github":
        return f"roles/{group}/{name}/{version}/{name}-{version}.tar.gz"
    return f"collections/{group}/{name}/{version}/{group}-{name}-{version}.tar.gz"


KIND_POLICIES: dict[AssetKind, KindPolicy] = {
    AssetKind.ROLE: KindPolicy(_role_listing_path, Persistence.ASSET, upstream_url_rewrite),
    AssetKind.ROLE_VERSION_LIST: KindPolicy(_role_version_list_path, Persistence.ASSET, role_version_list_rewrite),
    AssetKind.COLLECTION_VERSION_LIST: KindPolicy(
        _collection_version_list_path, Persistence.ASSET, upstream_url_rewrite
    ),
    AssetKind.COLLECTION_VERSION: KindPolicy(_collection_version_path, Persistence.COMPONENT, upstream_url_rewrite),
    AssetKind.ARTIFACT: KindPolicy(_artifact_path, Persistence.COMPONENT, no_rewrite, metadata=False),
    AssetKind.API_INTERNALS: KindPolicy(None, Persistence.NONE, upstream_url_rewrite),
}

_missing = [kind.name for kind in AssetKind if kind not in KIND_POLICIES]
if _missing:
    raise RuntimeError(f"No handling policy for asset kinds: {', '.join(_missing)}")


def coerce_kind(kind: object) -> AssetKind:
    if isinstance(kind, AssetKind):
        return kind
    try:
        return AssetKind(kind)
    except ValueError as exc:
        raise InvalidAssetKindError(f"Received an invalid asset kind: {kind!r}") from exc


def policy_for(kind: object) -> KindPolicy:
    return KIND_POLICIES[coerce_kind(kind)]


def identity_from_tokens(tokens: Mapping[str, str]) -> PackageIdentity:
    try:
        return PackageIdentity(group=tokens["group"], name=tokens["name"], version=tokens["version"])
    except KeyError as exc:
        raise InvalidAssetKindError(f"Route tokens lack package identity field {exc.args[0]!r}") from exc
