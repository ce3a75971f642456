"""
Tests for the in-memory link repository.
"""

import pytest

from models.survey_link import LinkStatus, SurveyLink
from repositories.link_repository import InMemoryLinkRepository
from repositories.provider import LinkRepositoryProtocol, create_link_repository


@pytest.mark.unit
class TestInMemoryLinkRepository:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryLinkRepository(), LinkRepositoryProtocol)
        assert isinstance(create_link_repository(), LinkRepositoryProtocol)

    async def test_lookup_by_uid_and_id(self, link_repository):
        link = await link_repository.get_link_by_uid("uid-123")

        assert link.id == "link-1"
        assert await link_repository.get_link_by_id("link-1") == link
        assert await link_repository.get_link_by_uid("missing") is None

    async def test_seeded_constructor(self):
        link = SurveyLink(id="l2", uid="u2", project_id="p")
        repository = InMemoryLinkRepository(links=[link])
        assert await repository.get_link_by_uid("u2") == link

    async def test_project_policy(self, link_repository):
        policy = await link_repository.get_project_policy("project-1")

        assert policy.allowed_countries == ["US", "CA"]
        assert await link_repository.get_project_policy("other") is None

    async def test_click_sets_timestamp_once(self, link_repository):
        first = await link_repository.update_link_status("link-1", LinkStatus.CLICKED)
        again = await link_repository.update_link_status("link-1", LinkStatus.CLICKED)

        assert first.status == LinkStatus.CLICKED
        assert first.clicked_at is not None
        assert again.clicked_at == first.clicked_at

    async def test_complete_sets_timestamp(self, link_repository):
        updated = await link_repository.update_link_status("link-1", LinkStatus.COMPLETED)

        assert updated.completed_at is not None
        assert (await link_repository.get_link_by_uid("uid-123")).status == LinkStatus.COMPLETED

    async def test_update_unknown_link(self, link_repository):
        assert await link_repository.update_link_status("missing", LinkStatus.CLICKED) is None

    async def test_flags(self, link_repository):
        record = await link_repository.record_flag("link-1", "VPN_DETECTED", {"threat_score": 25})
        await link_repository.record_flag("other", "TOR_DETECTED", {})

        flags = await link_repository.get_flags("link-1")

        assert flags == [record]
        assert record.metadata == {"threat_score": 25}
