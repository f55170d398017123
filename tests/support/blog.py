"""Blog posts and their comments."""

from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Integer, String, Text

from chronicle.registry import EntityRegistry, RevisionOptions
from chronicle.relations import owned_many, parent
from tests.support.base import HostBase, SoftDeletes


class Post(SoftDeletes, HostBase):
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(255), unique=True, nullable=True)
    title = Column(String(255), nullable=False)
    excerpt = Column(Text, nullable=True)
    body = Column(Text, nullable=False, default="")
    views = Column(Integer, nullable=False, default=0)


class Comment(HostBase):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    body = Column(Text, nullable=False)
    post_id = Column(Integer, ForeignKey("posts.id"), nullable=False, index=True)


def register(registry: EntityRegistry) -> None:
    registry.register(
        Post,
        options=RevisionOptions(
            unique={"slug"},
            ignored={"views"},
            soft_delete_column="deleted_at",
        ),
        relations=[owned_many("comments", Comment, foreign_key="post_id")],
    )
    registry.register(
        Comment,
        relations=[parent("post", Post, foreign_key="post_id")],
    )
