"""CMS pages and their content blocks.

Blocks may call out another entity through ``calloutable_id`` and
``calloutable_type``.
"""

from __future__ import annotations

from sqlalchemy import JSON, Column, ForeignKey, Integer, String

from chronicle.registry import EntityRegistry, RevisionOptions
from chronicle.relations import owned_many, parent, relation
from tests.support.base import HostBase, SoftDeletes


class Page(SoftDeletes, HostBase):
    __tablename__ = "pages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template = Column(String(100), nullable=False, default="default")
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, default="")
    position = Column(Integer, nullable=False, default=0)
    parent_id = Column(Integer, ForeignKey("pages.id"), nullable=True)


class Block(SoftDeletes, HostBase):
    __tablename__ = "blocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    page_id = Column(Integer, ForeignKey("pages.id"), nullable=False, index=True)
    calloutable_id = Column(Integer, nullable=True)
    calloutable_type = Column(String(100), nullable=True)
    template = Column(String(100), nullable=False, default="text")
    title = Column(String(255), nullable=False, default="")
    content = Column(JSON, nullable=False, default=dict)
    span = Column(Integer, nullable=False, default=12)
    position = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="draft")
    updated_by = Column(String(100), nullable=True)
    published_by = Column(String(100), nullable=True)


def register(registry: EntityRegistry) -> None:
    registry.register(
        Page,
        options=RevisionOptions(soft_delete_column="deleted_at"),
        relations=[
            parent("parent", Page, foreign_key="parent_id"),
            owned_many("children", Page, foreign_key="parent_id"),
            owned_many("blocks", Block, foreign_key="page_id"),
            relation(
                "called_out_by",
                "morph_one",
                target=Block,
                foreign_key="calloutable_id",
                type_column="calloutable_type",
            ),
        ],
    )
    registry.register(
        Block,
        options=RevisionOptions(
            ignored={"status", "updated_by", "published_by"},
            soft_delete_column="deleted_at",
        ),
        relations=[
            parent("page", Page, foreign_key="page_id"),
            relation("callout", "morph_to"),
        ],
    )
