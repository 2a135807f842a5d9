"""Delivery ledger model."""

from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gitrelay.models.base import Base


class DeliveredFile(Base):
    """Last content hash successfully delivered to an app for one file."""

    __tablename__ = "app_delivered_files"

    app_id: Mapped[str] = mapped_column(String, primary_key=True)
    repository_id: Mapped[str] = mapped_column(String, primary_key=True)
    file_path: Mapped[str] = mapped_column(Text, primary_key=True)
    file_sha: Mapped[str] = mapped_column(String, nullable=False)
    delivered_at: Mapped[str] = mapped_column(Text, nullable=False)
