"""SQLAlchemy models for the mirror index."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ModelTypeRow(Base):
    """Catalog model type (Checkpoint, LORA, ...)."""

    __tablename__ = "model_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)


class BaseModelRow(Base):
    """Base model a version was trained on (SD 1.5, SDXL 1.0, ...)."""

    __tablename__ = "base_models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)


class BaseModelTypeRow(Base):
    __tablename__ = "base_model_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)


class CreatorRow(Base):
    __tablename__ = "creators"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    image: Mapped[Optional[str]] = mapped_column(Text)

    models: Mapped[List["ModelRow"]] = relationship(back_populates="creator")


class TagRow(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    models: Mapped[List["ModelRow"]] = relationship(
        secondary="model_tags", back_populates="tags"
    )


class ModelTagRow(Base):
    """Junction table for model-tag many-to-many relationship."""

    __tablename__ = "model_tags"

    model_id: Mapped[int] = mapped_column(
        ForeignKey("models.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[int] = mapped_column(
        ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )


class ModelRow(Base):
    """A catalog model; ids are the catalog's own."""

    __tablename__ = "models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    type_id: Mapped[int] = mapped_column(ForeignKey("model_types.id"), nullable=False)
    creator_id: Mapped[Optional[int]] = mapped_column(ForeignKey("creators.id", ondelete="SET NULL"))
    nsfw: Mapped[bool] = mapped_column(Boolean, default=False)
    nsfw_level: Mapped[int] = mapped_column(Integer, default=0)
    json_: Mapped[dict] = mapped_column("json", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    type: Mapped[ModelTypeRow] = relationship()
    creator: Mapped[Optional[CreatorRow]] = relationship(back_populates="models")
    tags: Mapped[List[TagRow]] = relationship(
        secondary="model_tags", back_populates="models"
    )
    versions: Mapped[List["ModelVersionRow"]] = relationship(
        back_populates="model", cascade="all, delete-orphan"
    )


class ModelVersionRow(Base):
    """A catalog model version; the unit tracked by scans and deletions."""

    __tablename__ = "model_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    model_id: Mapped[int] = mapped_column(
        ForeignKey("models.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    base_model_id: Mapped[int] = mapped_column(ForeignKey("base_models.id"), nullable=False)
    base_model_type_id: Mapped[Optional[int]] = mapped_column(ForeignKey("base_model_types.id"))
    nsfw_level: Mapped[int] = mapped_column(Integer, default=0)
    published_at: Mapped[Optional[str]] = mapped_column(String(64))
    json_: Mapped[dict] = mapped_column("json", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    model: Mapped[ModelRow] = relationship(back_populates="versions")
    base_model: Mapped[BaseModelRow] = relationship()
    base_model_type: Mapped[Optional[BaseModelTypeRow]] = relationship()
    files: Mapped[List["ModelVersionFileRow"]] = relationship(
        back_populates="version", cascade="all, delete-orphan", order_by="ModelVersionFileRow.id"
    )
    images: Mapped[List["ModelVersionImageRow"]] = relationship(
        back_populates="version", cascade="all, delete-orphan", order_by="ModelVersionImageRow.id"
    )


class ModelVersionFileRow(Base):
    __tablename__ = "model_version_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    version_id: Mapped[int] = mapped_column(
        ForeignKey("model_versions.id", ondelete="CASCADE"), primary_key=True
    )
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    type: Mapped[str] = mapped_column(String(64), default="Model")
    size_kb: Mapped[float] = mapped_column(Float, default=0.0)
    download_url: Mapped[str] = mapped_column(Text, nullable=False)
    sha256: Mapped[Optional[str]] = mapped_column(String(64))
    # Present on disk when the row was last synced
    on_disk: Mapped[bool] = mapped_column(Boolean, default=False)

    version: Mapped[ModelVersionRow] = relationship(back_populates="files")


class ModelVersionImageRow(Base):
    __tablename__ = "model_version_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    version_id: Mapped[int] = mapped_column(
        ForeignKey("model_versions.id", ondelete="CASCADE"), primary_key=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(16), default="image")
    width: Mapped[int] = mapped_column(Integer, default=0)
    height: Mapped[int] = mapped_column(Integer, default=0)
    hash: Mapped[Optional[str]] = mapped_column(String(128))
    nsfw_level: Mapped[int] = mapped_column(Integer, default=0)
    on_disk: Mapped[bool] = mapped_column(Boolean, default=False)

    version: Mapped[ModelVersionRow] = relationship(back_populates="images")
