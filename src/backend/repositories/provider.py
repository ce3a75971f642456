"""
Repository provider for dependency injection.

The screening core reads links and project policies and writes flags and
status transitions only through LinkRepositoryProtocol. The application
owns one repository instance (created during startup and kept on
``app.state``); this module defines the contract and the factory.

Usage:
    from repositories.provider import LinkRepositoryProtocol

    # In FastAPI dependencies:
    async def some_endpoint(
        repository: LinkRepositoryProtocol = Depends(get_link_repository),
    ):
        link = await repository.get_link_by_uid(uid)
"""

from typing import Any, Optional, Protocol, runtime_checkable

from models.survey_link import FlagRecord, LinkStatus, ProjectPolicy, SurveyLink

# =============================================================================
# Repository Protocols (Interfaces)
# =============================================================================


@runtime_checkable
class LinkRepositoryProtocol(Protocol):
    """Protocol defining survey link repository operations."""

    async def get_link_by_uid(self, uid: str) -> Optional[SurveyLink]: ...
    async def get_project_policy(self, project_id: str) -> Optional[ProjectPolicy]: ...
    async def record_flag(self, link_id: str, reason: str, metadata: dict[str, Any]) -> FlagRecord: ...
    async def update_link_status(self, link_id: str, status: LinkStatus) -> Optional[SurveyLink]: ...


# =============================================================================
# Repository Factory Functions
# =============================================================================


def create_link_repository() -> LinkRepositoryProtocol:
    """
    Create the link repository for this process.

    Persistence is provided by the hosting platform; the service ships with
    the in-memory repository, which deployments replace by assigning their
    own implementation to ``app.state.link_repository``.
    """
    from repositories.link_repository import InMemoryLinkRepository

    return InMemoryLinkRepository()
