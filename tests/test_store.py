from pathlib import Path

import pytest

from browser_session_hub.errors import InfrastructureError
from browser_session_hub.models import ActionStatus, SessionStatus
from browser_session_hub.store import Datastore


@pytest.mark.asyncio
async def test_get_or_create_user_is_stable(datastore):
    first = await datastore.get_or_create_user("user-1", "owner@example.com")
    second = await datastore.get_or_create_user("user-1", "changed@example.com")

    assert first.id == second.id == "user-1"
    assert second.email == "owner@example.com"


@pytest.mark.asyncio
async def test_timestamps_are_timezone_aware(datastore, project):
    session = await datastore.create_session(project.id, None)

    stored = await datastore.get_session(session.id)

    assert stored.created_at.tzinfo is not None
    assert stored.last_used_at == session.last_used_at


@pytest.mark.asyncio
async def test_compare_and_set_only_moves_expected_status(datastore, project):
    session = await datastore.create_session(project.id, "https://example.com")

    assert await datastore.compare_and_set_status(
        session.id,
        expected=SessionStatus.CREATED,
        new=SessionStatus.RUNNING,
        container_id="engine-1",
    )
    assert not await datastore.compare_and_set_status(
        session.id,
        expected=SessionStatus.CREATED,
        new=SessionStatus.FAILED,
    )
    stored = await datastore.get_session(session.id)
    assert stored.status == SessionStatus.RUNNING
    assert stored.container_id == "engine-1"


@pytest.mark.asyncio
async def test_actions_listed_oldest_first(datastore, project):
    session = await datastore.create_session(project.id, "https://example.com")
    for details in ("open menu", "click settings"):
        await datastore.record_action(
            session.id,
            action_type="nlp",
            details=details,
            status=ActionStatus.SUCCESS,
            message="ok",
        )

    actions = await datastore.list_actions(session.id)

    assert [action.details for action in actions] == ["open menu", "click settings"]
    stored = await datastore.get_session(session.id)
    assert stored.last_used_at == actions[-1].created_at


@pytest.mark.asyncio
async def test_delete_project_cascades(datastore, project):
    session = await datastore.create_session(project.id, "https://example.com")
    await datastore.record_action(
        session.id,
        action_type="nlp",
        details="click",
        status=ActionStatus.FAILED,
        message="no match",
    )

    assert await datastore.delete_project(project.id)

    assert await datastore.get_session(session.id) is None
    assert await datastore.list_actions(session.id) == []
    assert not await datastore.delete_session(session.id)


@pytest.mark.asyncio
async def test_driver_failures_become_infrastructure_errors(tmp_path: Path):
    store = Datastore(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'hub.db'}")

    with pytest.raises(InfrastructureError) as excinfo:
        await store.create_all()
    await store.dispose()

    assert excinfo.value.status_code == 503
    assert excinfo.value.public_message() == "The service is temporarily unavailable"
