"""
In-memory survey link repository.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from models.survey_link import FlagRecord, LinkStatus, ProjectPolicy, SurveyLink

logger = structlog.get_logger(__name__)


class InMemoryLinkRepository:
    """Repository for survey links, project policies and flags held in process memory."""

    def __init__(
        self,
        links: Optional[list[SurveyLink]] = None,
        policies: Optional[list[ProjectPolicy]] = None,
    ):
        self._links: dict[str, SurveyLink] = {link.id: link for link in links or []}
        self._uid_index: dict[str, str] = {link.uid: link.id for link in links or []}
        self._policies: dict[str, ProjectPolicy] = {p.project_id: p for p in policies or []}
        self._flags: list[FlagRecord] = []
        self._lock = asyncio.Lock()

    async def add_link(self, link: SurveyLink) -> SurveyLink:
        async with self._lock:
            self._links[link.id] = link
            self._uid_index[link.uid] = link.id
        return link

    async def set_project_policy(self, policy: ProjectPolicy) -> ProjectPolicy:
        async with self._lock:
            self._policies[policy.project_id] = policy
        return policy

    async def get_link_by_uid(self, uid: str) -> Optional[SurveyLink]:
        """Get a link by its public uid."""
        link_id = self._uid_index.get(uid)
        return self._links.get(link_id) if link_id else None

    async def get_link_by_id(self, link_id: str) -> Optional[SurveyLink]:
        return self._links.get(link_id)

    async def get_project_policy(self, project_id: str) -> Optional[ProjectPolicy]:
        return self._policies.get(project_id)

    async def record_flag(self, link_id: str, reason: str, metadata: dict[str, Any]) -> FlagRecord:
        """Persist a flag against a link."""
        record = FlagRecord(link_id=link_id, reason=reason, metadata=metadata)
        async with self._lock:
            self._flags.append(record)
        logger.info("link_flag_recorded", link_id=link_id, reason=reason)
        return record

    async def get_flags(self, link_id: str) -> list[FlagRecord]:
        return [f for f in self._flags if f.link_id == link_id]

    async def update_link_status(self, link_id: str, status: LinkStatus) -> Optional[SurveyLink]:
        """Move a link to a new status. Returns None for an unknown link."""
        async with self._lock:
            link = self._links.get(link_id)
            if link is None:
                return None
            now = datetime.now(timezone.utc)
            changes: dict[str, Any] = {"status": status, "updated_at": now}
            if status == LinkStatus.CLICKED and link.clicked_at is None:
                changes["clicked_at"] = now
            if status == LinkStatus.COMPLETED:
                changes["completed_at"] = now
            updated = link.model_copy(update=changes)
            self._links[link_id] = updated
        logger.info("link_status_updated", link_id=link_id, status=status.value)
        return updated
