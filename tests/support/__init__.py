"""Host models and helpers shared by the test suite."""

from tests.support.base import FakeClock, HostBase
from tests.support.blog import Comment, Post
from tests.support.cms import Block, Page
from tests.support.servers import Cluster, Environment, Group, Server, cluster_server

__all__ = [
    "FakeClock",
    "HostBase",
    "Post",
    "Comment",
    "Page",
    "Block",
    "Group",
    "Environment",
    "Server",
    "Cluster",
    "cluster_server",
    "register_all",
]


def register_all(registry):
    """Register every sample model with ``registry``."""
    from tests.support import blog, cms, servers

    blog.register(registry)
    cms.register(registry)
    servers.register(registry)
    return registry
