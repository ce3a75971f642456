"""Repository modules for survey link access."""

from repositories.link_repository import InMemoryLinkRepository
from repositories.provider import LinkRepositoryProtocol, create_link_repository

__all__ = [
    "InMemoryLinkRepository",
    "LinkRepositoryProtocol",
    "create_link_repository",
]
