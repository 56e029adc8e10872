from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from resourcekit.db.session import Base
from resourcekit.models.common import ResourceMixin


class Owner(Base, ResourceMixin):
    __tablename__ = "owners"
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True, unique=True)

    widgets = relationship("Widget", back_populates="owner")
