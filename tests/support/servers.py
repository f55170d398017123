"""Server inventory: groups own environments, environments own servers,
servers join clusters through ``cluster_server``."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Table, Text

from chronicle.base import utcnow
from chronicle.registry import EntityRegistry, RevisionOptions
from chronicle.relations import owned_many, parent, pivot, relation
from tests.support.base import HostBase, SoftDeletes
from tests.support.cms import Block

cluster_server = Table(
    "cluster_server",
    HostBase.metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("cluster_id", Integer, ForeignKey("clusters.id"), nullable=False),
    Column("server_id", Integer, ForeignKey("servers.id"), nullable=False),
    Column("default", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)


class Group(SoftDeletes, HostBase):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, default="")
    position = Column(Integer, nullable=False, default=0)
    parent_id = Column(Integer, ForeignKey("groups.id"), nullable=True)


class Environment(SoftDeletes, HostBase):
    __tablename__ = "environments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, default="")
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=True)
    subgroup_id = Column(Integer, ForeignKey("groups.id"), nullable=True)


class Server(SoftDeletes, HostBase):
    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    environment_id = Column(Integer, ForeignKey("environments.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    manufacturer = Column(String(255), nullable=False, default="")
    notes = Column(String(255), nullable=False, default="")
    finish = Column(Boolean, nullable=False, default=False)


class Cluster(SoftDeletes, HostBase):
    __tablename__ = "clusters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, default="")
    parent_id = Column(Integer, ForeignKey("clusters.id"), nullable=True)


def register(registry: EntityRegistry) -> None:
    soft = RevisionOptions(soft_delete_column="deleted_at")

    registry.register(
        Group,
        options=soft,
        relations=[
            parent("parent", Group, foreign_key="parent_id"),
            owned_many("children", Group, foreign_key="parent_id"),
            owned_many("environments", Environment, foreign_key="group_id"),
            owned_many("sub_environments", Environment, foreign_key="subgroup_id"),
        ],
    )
    registry.register(
        Environment,
        options=soft,
        relations=[
            parent("group", Group, foreign_key="group_id"),
            parent("subgroup", Group, foreign_key="subgroup_id"),
            owned_many("servers", Server, foreign_key="environment_id"),
        ],
    )
    registry.register(
        Server,
        options=soft,
        relations=[
            parent("environment", Environment, foreign_key="environment_id"),
            pivot(
                "clusters",
                cluster_server,
                local_key="server_id",
                remote_key="cluster_id",
                target=Cluster,
            ),
            relation(
                "called_out_by",
                "morph_one",
                target=Block,
                foreign_key="calloutable_id",
                type_column="calloutable_type",
            ),
            # Reached through the environment; not something a revision copies.
            relation("group", "has_one_through", target=Group),
        ],
    )
    registry.register(
        Cluster,
        options=soft,
        relations=[
            parent("parent", Cluster, foreign_key="parent_id"),
            owned_many("children", Cluster, foreign_key="parent_id"),
            pivot(
                "servers",
                cluster_server,
                local_key="cluster_id",
                remote_key="server_id",
                target=Server,
            ),
        ],
    )
