"""
Civitai Mirror - Database Port

Narrow CRUD contract the reconciler and deletion service depend on, plus the
shipped SQLAlchemy implementation over the tables in ``db_models``.

Every public method opens its own session, so one model version is written
in exactly one transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, List, Optional, Protocol, Type, TypeVar

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .db_models import (
    Base,
    BaseModelRow,
    BaseModelTypeRow,
    CreatorRow,
    ModelRow,
    ModelTypeRow,
    ModelVersionFileRow,
    ModelVersionImageRow,
    ModelVersionRow,
    TagRow,
)
from .errors import DatabaseError
from .models import Model, ModelVersion, RecordDeleteResult, VersionRecord

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Base)


class DatabasePort(Protocol):
    """What the engine needs from the index database."""

    def find_version(self, version_id: int) -> Optional[VersionRecord]:
        ...

    def list_versions(self, offset: int = 0, limit: Optional[int] = None) -> List[VersionRecord]:
        ...

    def count_versions(self) -> int:
        ...

    def upsert_model_version(
        self,
        model: Model,
        version: ModelVersion,
        overwrite: bool = False,
        file_presence: Optional[Dict[int, bool]] = None,
        image_presence: Optional[Dict[int, bool]] = None,
    ) -> bool:
        ...

    def delete_model_version(self, version_id: int, model_id: Optional[int] = None) -> RecordDeleteResult:
        ...


def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")  # required for ON DELETE CASCADE
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


class SqlDatabase:
    """
    SQLAlchemy implementation of the database port.

    Args:
        url: SQLAlchemy database URL, e.g. ``sqlite:///~/mirror/index.sqlite``.
        echo: Log emitted SQL.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine: Engine = self._create_engine(url, echo)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        parsed = make_url(url)
        if parsed.get_backend_name() != "sqlite":
            return create_engine(url, echo=echo, future=True)

        if parsed.database and parsed.database != ":memory:":
            db_path = Path(parsed.database).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            parsed = parsed.set(database=str(db_path))

        engine = create_engine(
            parsed,
            echo=echo,
            future=True,
            connect_args={"timeout": 30, "check_same_thread": False},
        )
        event.listen(engine, "connect", _set_sqlite_pragma)
        return engine

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Session committed on success, rolled back on any exception."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Queries
    # =========================================================================

    def find_version(self, version_id: int) -> Optional[VersionRecord]:
        try:
            with self.session() as session:
                row = session.get(ModelVersionRow, version_id)
                return self._to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read model version {version_id}: {e}", version_id=version_id) from e

    def list_versions(self, offset: int = 0, limit: Optional[int] = None) -> List[VersionRecord]:
        """Indexed versions ordered by id, optionally one page of them."""
        try:
            with self.session() as session:
                rows = session.scalars(
                    select(ModelVersionRow)
                    .options(
                        selectinload(ModelVersionRow.files),
                        selectinload(ModelVersionRow.images),
                        selectinload(ModelVersionRow.model).selectinload(ModelRow.type),
                    )
                    .order_by(ModelVersionRow.id)
                    .offset(offset)
                    .limit(limit)
                ).all()
                return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list model versions: {e}") from e

    def count_versions(self) -> int:
        with self.session() as session:
            return session.scalar(select(func.count()).select_from(ModelVersionRow)) or 0

    def count_models(self) -> int:
        with self.session() as session:
            return session.scalar(select(func.count()).select_from(ModelRow)) or 0

    @staticmethod
    def _to_record(row: ModelVersionRow) -> VersionRecord:
        return VersionRecord(
            version_id=row.id,
            model_id=row.model_id,
            model_type=row.model.type.name,
            name=row.name,
            file_ids=[f.id for f in row.files],
            image_ids=[i.id for i in row.images],
            files_on_disk=[f.id for f in row.files if f.on_disk],
            images_on_disk=[i.id for i in row.images if i.on_disk],
            file_names={f.id: f.name for f in row.files},
            image_urls={i.id: i.url for i in row.images},
        )

    # =========================================================================
    # Upsert
    # =========================================================================

    def upsert_model_version(
        self,
        model: Model,
        version: ModelVersion,
        overwrite: bool = False,
        file_presence: Optional[Dict[int, bool]] = None,
        image_presence: Optional[Dict[int, bool]] = None,
    ) -> bool:
        """
        Write a version, its parent model and lookup rows in one transaction.

        Args:
            overwrite: Replace an existing version row and synchronize its
                       file/image rows to the declared set. Without it an
                       existing row is left untouched.
            file_presence: file id -> present on disk.
            image_presence: image id -> present on disk.

        Returns:
            True if a row was written, False if an existing row was kept.

        Raises:
            ImageIdError: If an image id cannot be derived from its URL.
            DatabaseError: If the write fails.
        """
        file_presence = file_presence or {}
        image_presence = image_presence or {}
        # Resolve before touching the session so a bad URL writes nothing
        images = [(image.resolve_id(), image) for image in version.images]

        try:
            with self.session() as session:
                row = session.get(ModelVersionRow, version.id)
                if row is not None and not overwrite:
                    return False

                # Lookup rows first: flushing them must not see half-built rows
                base_model_row = self._get_or_create(session, BaseModelRow, name=version.base_model)
                base_model_type_row = (
                    self._get_or_create(session, BaseModelTypeRow, name=version.base_model_type)
                    if version.base_model_type else None
                )
                model_row = self._upsert_model(session, model, overwrite)

                if row is None:
                    row = ModelVersionRow(id=version.id)
                    session.add(row)
                row.model = model_row
                row.name = version.name
                row.base_model = base_model_row
                row.base_model_type = base_model_type_row
                row.nsfw_level = version.nsfw_level
                row.published_at = version.published_at
                version_json = version.to_json_dict()
                if version_json.get("modelId") is None:
                    version_json["modelId"] = model.id
                row.json_ = version_json

                self._sync_files(row, version, file_presence)
                self._sync_images(row, images, image_presence)

            logger.debug(
                f"[Database] {'Overwrote' if overwrite else 'Created'} model version "
                f"{version.id} (model {model.id})"
            )
            return True
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to upsert model version {version.id}: {e}",
                model_id=model.id,
                version_id=version.id,
            ) from e

    def _upsert_model(self, session: Session, model: Model, overwrite: bool) -> ModelRow:
        model_row = session.get(ModelRow, model.id)
        if model_row is not None and not overwrite:
            return model_row

        type_row = self._get_or_create(session, ModelTypeRow, name=model.type.value)
        creator = None
        if model.creator is not None:
            creator = self._get_or_create(session, CreatorRow, username=model.creator.username)
            if model.creator.image:
                creator.image = model.creator.image
        tags = [
            self._get_or_create(session, TagRow, name=tag)
            for tag in dict.fromkeys(model.tags)
        ]

        if model_row is None:
            model_row = ModelRow(id=model.id)
            session.add(model_row)

        model_row.name = model.name
        model_row.type = type_row
        model_row.creator = creator
        model_row.tags = tags
        model_row.nsfw = model.nsfw
        model_row.nsfw_level = model.nsfw_level
        model_json = model.to_json_dict()
        model_json["modelVersions"] = []
        model_row.json_ = model_json
        return model_row

    @staticmethod
    def _sync_files(row: ModelVersionRow, version: ModelVersion, presence: Dict[int, bool]) -> None:
        existing = {f.id: f for f in row.files}
        declared = set()
        for model_file in version.files:
            declared.add(model_file.id)
            file_row = existing.get(model_file.id)
            if file_row is None:
                file_row = ModelVersionFileRow(id=model_file.id)
                row.files.append(file_row)
            file_row.name = model_file.name
            file_row.type = model_file.type
            file_row.size_kb = model_file.size_kb
            file_row.download_url = model_file.download_url
            file_row.sha256 = model_file.hashes.sha256 if model_file.hashes else None
            file_row.on_disk = bool(presence.get(model_file.id, False))

        for file_id, file_row in existing.items():
            if file_id not in declared:
                row.files.remove(file_row)

    @staticmethod
    def _sync_images(row: ModelVersionRow, images, presence: Dict[int, bool]) -> None:
        existing = {i.id: i for i in row.images}
        declared = set()
        for image_id, image in images:
            if image_id in declared:
                continue
            declared.add(image_id)
            image_row = existing.get(image_id)
            if image_row is None:
                image_row = ModelVersionImageRow(id=image_id)
                row.images.append(image_row)
            image_row.url = image.url
            image_row.type = image.type
            image_row.width = image.width
            image_row.height = image.height
            image_row.hash = image.hash
            image_row.nsfw_level = image.nsfw_level
            image_row.on_disk = bool(presence.get(image_id, False))

        for image_id, image_row in existing.items():
            if image_id not in declared:
                row.images.remove(image_row)

    @staticmethod
    def _get_or_create(session: Session, cls: Type[R], **values) -> R:
        instance = session.scalars(select(cls).filter_by(**values)).first()
        if instance is None:
            instance = cls(**values)
            session.add(instance)
            session.flush()
        return instance

    # =========================================================================
    # Delete
    # =========================================================================

    def delete_model_version(self, version_id: int, model_id: Optional[int] = None) -> RecordDeleteResult:
        """
        Remove a version row and its file/image rows.

        The parent model row is removed too when this was its last version.
        A missing row is reported as ``deleted=False``, not an error.
        """
        try:
            with self.session() as session:
                row = session.get(ModelVersionRow, version_id)
                if row is None:
                    return RecordDeleteResult(deleted=False)

                if model_id is not None and row.model_id != model_id:
                    raise DatabaseError(
                        f"Model version {version_id} belongs to model {row.model_id}, not {model_id}",
                        model_id=model_id,
                        version_id=version_id,
                    )

                parent_id = row.model_id
                file_count = len(row.files)
                image_count = len(row.images)
                session.delete(row)
                session.flush()

                remaining = session.scalar(
                    select(func.count())
                    .select_from(ModelVersionRow)
                    .where(ModelVersionRow.model_id == parent_id)
                )
                model_deleted = False
                if not remaining:
                    parent = session.get(ModelRow, parent_id)
                    if parent is not None:
                        session.delete(parent)
                        model_deleted = True

            logger.debug(
                f"[Database] Deleted model version {version_id}"
                + (f" and model {parent_id}" if model_deleted else "")
            )
            return RecordDeleteResult(
                deleted=True,
                model_deleted=model_deleted,
                file_count=file_count,
                image_count=image_count,
            )
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to delete model version {version_id}: {e}",
                model_id=model_id,
                version_id=version_id,
            ) from e
