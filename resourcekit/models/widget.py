import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from resourcekit.db.session import Base
from resourcekit.models.common import ResourceMixin


class Widget(Base, ResourceMixin):
    __tablename__ = "widgets"
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tags: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("owners.id"), nullable=True, index=True)
    # Bumped on every update; a write against a stale row fails with a save error.
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    owner = relationship("Owner", back_populates="widgets")

    __mapper_args__ = {"version_id_col": version}
