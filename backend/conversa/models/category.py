import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conversa.core.database import Base


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true", default=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    keywords: Mapped[list["CategoryKeyword"]] = relationship(back_populates="category")

    def __repr__(self) -> str:
        return f"<Category {self.name}>"


class CategoryKeyword(Base):
    """Weighted keyword used to pick a category for a new conversation.

    The category with the highest summed weight over the matching keywords wins.
    """

    __tablename__ = "category_keywords"
    __table_args__ = (Index("ix_category_keywords_active", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    category_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("categories.id"), nullable=False
    )
    keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1", default=1)
    is_exact_match: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    is_case_sensitive: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true", default=True)
    match_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    category: Mapped["Category"] = relationship(back_populates="keywords")

    def __repr__(self) -> str:
        return f"<CategoryKeyword '{self.keyword}' weight={self.weight}>"
