"""Component and asset metadata persisted through SQLAlchemy async sessions.

Each public ``maybe_create_and_save_*`` call is one unit of work: component,
asset and blob rows are written inside a single transaction, and the blob file
is committed to the blob store before the asset row points at it. Any failure
rolls the whole unit back, so no committed asset references a missing blob.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Mapping, Optional, Sequence

import structlog
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..proxy.kinds import AssetKind, PackageIdentity, coerce_kind
from .blobs import BlobStore, TempBlob
from .content import CacheInfo, Content


LOGGER = structlog.get_logger("galaxycache.metadata")

metadata = MetaData()


blobs_table = Table(
    "blobs",
    metadata,
    Column("blob_ref", String(length=160), primary_key=True),
    Column("size", BigInteger, nullable=False),
    Column("hashes", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


components_table = Table(
    "components",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("repository", String(length=255), nullable=False),
    Column("group_name", String(length=255), nullable=False),
    Column("name", String(length=255), nullable=False),
    Column("version", String(length=255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("repository", "group_name", "name", "version", name="uq_component_identity"),
)


assets_table = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("repository", String(length=255), nullable=False),
    Column("name", String(length=1024), nullable=False),
    Column("kind", String(length=64), nullable=False),
    Column("component_id", Integer, ForeignKey("components.id"), nullable=True),
    Column("blob_ref", String(length=160), ForeignKey("blobs.blob_ref"), nullable=True),
    Column("content_type", String(length=255), nullable=True),
    Column("size", BigInteger, nullable=True),
    Column("hashes", JSON, nullable=True),
    Column("last_modified", DateTime(timezone=True), nullable=True),
    Column("last_verified", DateTime(timezone=True), nullable=True),
    Column("validator", String(length=512), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("repository", "name", name="uq_asset_name"),
)


@dataclass(frozen=True)
class Component:
    id: int
    repository: str
    group: str
    name: str
    version: str

    @property
    def identity(self) -> PackageIdentity:
        return PackageIdentity(self.group, self.name, self.version)


@dataclass(frozen=True)
class Asset:
    id: int
    repository: str
    name: str
    kind: AssetKind
    component_id: Optional[int] = None
    blob_ref: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    hashes: Optional[dict[str, str]] = None
    last_modified: Optional[datetime] = None
    last_verified: Optional[datetime] = None
    validator: Optional[str] = None

    @property
    def cache_info(self) -> Optional[CacheInfo]:
        if self.last_verified is None:
            return None
        return CacheInfo(last_verified=self.last_verified, validator=self.validator)


@dataclass(frozen=True)
class Blob:
    blob_ref: str
    size: int
    hashes: dict[str, str]


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {"future": True, "echo": False, "pool_pre_ping": True}
    if url.get_backend_name() != "sqlite":
        engine_kwargs.update({"pool_size": 10, "max_overflow": 20, "pool_recycle": 1800})
    elif url.database:
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(database_url, **engine_kwargs)


async def ensure_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _insert_ignoring_conflict(
    session: AsyncSession,
    table: Table,
    values: Mapping[str, object],
    conflict_columns: Sequence[str],
) -> bool:
    """Insert a row unless one with the same unique key exists; True when this call inserted it."""

    dialect = session.bind.dialect.name
    if dialect in {"sqlite", "postgresql"}:
        builder = sqlite_insert if dialect == "sqlite" else postgresql_insert
        stmt = builder(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
        result = await session.execute(stmt)
        return result.rowcount == 1

    try:
        async with session.begin_nested():
            await session.execute(insert(table).values(**values))
    except IntegrityError:
        LOGGER.debug("insert_conflict_adopted", table=table.name)
        return False
    return True


def _maintain_last_modified(asset: Asset, attributes: Mapping[str, object]) -> datetime:
    upstream = attributes.get("last_modified")
    if isinstance(upstream, datetime):
        return _as_utc(upstream)
    if asset.last_modified is not None:
        return asset.last_modified
    return _utcnow()


class MetadataStore:
    """Get-or-create and lookup operations over components, assets and blobs."""

    def __init__(self, engine: AsyncEngine, blob_store: BlobStore, hash_algorithms: Sequence[str]) -> None:
        if not hash_algorithms:
            raise ValueError("at least one hash algorithm is required")
        self._engine = engine
        self._sessions = session_factory(engine)
        self._blobs = blob_store
        self._hash_algorithms = tuple(hash_algorithms)

    @property
    def hash_algorithms(self) -> tuple[str, ...]:
        return self._hash_algorithms

    async def ensure_schema(self) -> None:
        await ensure_schema(self._engine)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[AsyncSession]:
        async with self._sessions() as session:
            async with session.begin():
                yield session

    def temp_blob(self, source: AsyncIterator[bytes]):
        return self._blobs.temp_blob(source, self._hash_algorithms)

    async def find_asset(self, session: AsyncSession, bucket: str, name: str) -> Optional[Asset]:
        stmt = select(assets_table).where(assets_table.c.repository == bucket, assets_table.c.name == name).limit(1)
        row = (await session.execute(stmt)).mappings().first()
        return self._row_to_asset(row) if row else None

    async def find_component(
        self,
        session: AsyncSession,
        repository: str,
        group: str,
        name: str,
        version: str,
    ) -> Optional[Component]:
        stmt = (
            select(components_table)
            .where(
                components_table.c.repository == repository,
                components_table.c.group_name == group,
                components_table.c.name == name,
                components_table.c.version == version,
            )
            .limit(1)
        )
        row = (await session.execute(stmt)).mappings().first()
        return self._row_to_component(row) if row else None

    async def find_blob(self, session: AsyncSession, blob_ref: str) -> Optional[Blob]:
        stmt = select(blobs_table).where(blobs_table.c.blob_ref == blob_ref)
        row = (await session.execute(stmt)).mappings().first()
        if not row:
            return None
        return Blob(blob_ref=row["blob_ref"], size=int(row["size"]), hashes=dict(row["hashes"] or {}))

    async def get_or_create_component(
        self,
        session: AsyncSession,
        bucket: str,
        group: str,
        name: str,
        version: str,
    ) -> Component:
        existing = await self.find_component(session, bucket, group, name, version)
        if existing is not None:
            return existing
        created = await _insert_ignoring_conflict(
            session,
            components_table,
            {
                "repository": bucket,
                "group_name": group,
                "name": name,
                "version": version,
                "created_at": _utcnow(),
            },
            ("repository", "group_name", "name", "version"),
        )
        component = await self.find_component(session, bucket, group, name, version)
        if component is None:
            raise RuntimeError(f"Component {group}/{name}/{version} vanished after insert")
        if created:
            LOGGER.debug("component_created", repository=bucket, group=group, name=name, version=version)
        return component

    async def get_or_create_asset(
        self,
        session: AsyncSession,
        bucket: str,
        name: str,
        kind: AssetKind | str,
        component: Optional[Component] = None,
    ) -> Asset:
        asset_kind = coerce_kind(kind)
        existing = await self.find_asset(session, bucket, name)
        if existing is not None:
            return existing
        now = _utcnow()
        await _insert_ignoring_conflict(
            session,
            assets_table,
            {
                "repository": bucket,
                "name": name,
                "kind": asset_kind.value,
                "component_id": component.id if component else None,
                "created_at": now,
                "updated_at": now,
            },
            ("repository", "name"),
        )
        asset = await self.find_asset(session, bucket, name)
        if asset is None:
            raise RuntimeError(f"Asset {name} vanished after insert")
        return asset

    async def save_asset_content(
        self,
        session: AsyncSession,
        asset: Asset,
        staged: TempBlob,
        content_type: str,
        attributes: Optional[Mapping[str, object]] = None,
    ) -> Content:
        attributes = attributes or {}
        LOGGER.debug("saving_asset", repository=asset.repository, asset=asset.name)
        last_modified = _maintain_last_modified(asset, attributes)
        blob_ref = await self._blobs.commit(staged)
        hashes = staged.hashes
        await _insert_ignoring_conflict(
            session,
            blobs_table,
            {"blob_ref": blob_ref, "size": staged.size, "hashes": hashes, "created_at": _utcnow()},
            ("blob_ref",),
        )
        now = _utcnow()
        validator = attributes.get("etag")
        await session.execute(
            update(assets_table)
            .where(assets_table.c.id == asset.id)
            .values(
                blob_ref=blob_ref,
                content_type=content_type,
                size=staged.size,
                hashes=hashes,
                last_modified=last_modified,
                last_verified=now,
                validator=validator,
                updated_at=now,
            )
        )
        saved = replace(
            asset,
            blob_ref=blob_ref,
            content_type=content_type,
            size=staged.size,
            hashes=hashes,
            last_modified=last_modified,
            last_verified=now,
            validator=validator if isinstance(validator, str) else None,
        )
        LOGGER.info("asset_saved", repository=asset.repository, asset=asset.name, blob_ref=blob_ref, bytes=staged.size)
        return self.to_content(saved, Blob(blob_ref=blob_ref, size=staged.size, hashes=hashes))

    def to_content(self, asset: Asset, blob: Blob) -> Content:
        recorded = asset.hashes or blob.hashes
        hashes = {name: recorded[name] for name in self._hash_algorithms if name in recorded}
        return Content(
            content_type=asset.content_type or "application/octet-stream",
            opener=lambda: self._blobs.open(blob.blob_ref),
            size=blob.size,
            last_modified=asset.last_modified,
            hashes=hashes,
            asset_name=asset.name,
            cache_info=asset.cache_info,
        )

    async def get_asset_content(self, bucket: str, name: str) -> Optional[Content]:
        async with self.unit_of_work() as session:
            asset = await self.find_asset(session, bucket, name)
            if asset is None or asset.blob_ref is None:
                return None
            blob = await self.find_blob(session, asset.blob_ref)
        if blob is None or not self._blobs.exists(blob.blob_ref):
            LOGGER.warning("asset_blob_missing", repository=bucket, asset=name, blob_ref=asset.blob_ref)
            return None
        return self.to_content(asset, blob)

    async def maybe_create_and_save_asset(
        self,
        bucket: str,
        name: str,
        kind: AssetKind | str,
        staged: TempBlob,
        content_type: str,
        attributes: Optional[Mapping[str, object]] = None,
    ) -> Content:
        async with self.unit_of_work() as session:
            asset = await self.get_or_create_asset(session, bucket, name, kind)
            return await self.save_asset_content(session, asset, staged, content_type, attributes)

    async def maybe_create_and_save_component(
        self,
        bucket: str,
        identity: PackageIdentity,
        name: str,
        kind: AssetKind | str,
        staged: TempBlob,
        content_type: str,
        attributes: Optional[Mapping[str, object]] = None,
    ) -> Content:
        async with self.unit_of_work() as session:
            component = await self.get_or_create_component(
                session, bucket, identity.group, identity.name, identity.version
            )
            asset = await self.get_or_create_asset(session, bucket, name, kind, component)
            return await self.save_asset_content(session, asset, staged, content_type, attributes)

    async def set_cache_info(self, bucket: str, name: str, cache_info: CacheInfo) -> bool:
        async with self.unit_of_work() as session:
            result = await session.execute(
                update(assets_table)
                .where(assets_table.c.repository == bucket, assets_table.c.name == name)
                .values(
                    last_verified=cache_info.last_verified,
                    validator=cache_info.validator,
                    updated_at=_utcnow(),
                )
            )
            updated = result.rowcount
        if updated == 0:
            LOGGER.debug("cache_info_missing_asset", repository=bucket, asset=name)
            return False
        LOGGER.debug("cache_info_updated", repository=bucket, asset=name, last_verified=cache_info.last_verified.isoformat())
        return True

    async def counts(self, bucket: str) -> dict[str, int]:
        async with self._sessions() as session:
            components = await session.scalar(
                select(func.count()).select_from(components_table).where(components_table.c.repository == bucket)
            )
            assets = await session.scalar(
                select(func.count()).select_from(assets_table).where(assets_table.c.repository == bucket)
            )
            blobs = await session.scalar(select(func.count()).select_from(blobs_table))
        return {"components": int(components or 0), "assets": int(assets or 0), "blobs": int(blobs or 0)}

    @staticmethod
    def _row_to_component(row: Mapping[str, object]) -> Component:
        return Component(
            id=int(row["id"]),
            repository=str(row["repository"]),
            group=str(row["group_name"]),
            name=str(row["name"]),
            version=str(row["version"]),
        )

    @staticmethod
    def _row_to_asset(row: Mapping[str, object]) -> Asset:
        hashes = row.get("hashes")
        return Asset(
            id=int(row["id"]),
            repository=str(row["repository"]),
            name=str(row["name"]),
            kind=coerce_kind(row["kind"]),
            component_id=row.get("component_id"),
            blob_ref=row.get("blob_ref"),
            content_type=row.get("content_type"),
            size=int(row["size"]) if row.get("size") is not None else None,
            hashes=dict(hashes) if isinstance(hashes, dict) else None,
            last_modified=_as_utc(row.get("last_modified")),
            last_verified=_as_utc(row.get("last_verified")),
            validator=row.get("validator"),
        )
