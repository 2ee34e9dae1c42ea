import asyncio

import pytest

from browser_session_hub.coordinator.registry import EngineRegistry
from browser_session_hub.coordinator.service import SessionCoordinator
from browser_session_hub.engine.base import EngineActionError, EngineUnavailableError
from browser_session_hub.errors import (
    EngineInitError,
    EngineNotActiveError,
    EngineTimeoutError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from browser_session_hub.models import ActionOutcome, ActionStatus, SessionStatus


async def _running_session(coordinator, user, project):
    session = await coordinator.create_session(user, project.id)
    return await coordinator.initialize_session(user, session.id)


# Creation --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_session_uses_default_start_url(coordinator, user, project):
    session = await coordinator.create_session(user, project.id)

    assert session.status == SessionStatus.CREATED
    assert session.start_url == "https://example.com"
    assert session.container_id is None
    assert session.project_id == project.id


@pytest.mark.asyncio
async def test_create_session_requires_owned_project(coordinator, user, other_user, project):
    with pytest.raises(NotFoundError):
        await coordinator.create_session(user, "missing-project")
    with pytest.raises(ForbiddenError):
        await coordinator.create_session(other_user, project.id)
    with pytest.raises(ValidationError):
        await coordinator.create_session(user, "")
    with pytest.raises(UnauthorizedError):
        await coordinator.create_session(None, project.id)


# Initialization --------------------------------------------------------------


@pytest.mark.asyncio
async def test_initialize_moves_session_to_running(coordinator, user, project, backend, registry):
    session = await coordinator.create_session(user, project.id, "https://shop.example.com")

    running = await coordinator.initialize_session(user, session.id)

    assert running.status == SessionStatus.RUNNING
    assert running.container_id == f"stub-{session.id}"
    assert registry.lookup(session.id) is backend.created[0]
    assert backend.created[0].navigated_to == "https://shop.example.com"


@pytest.mark.asyncio
async def test_initialize_start_url_override(coordinator, user, project, backend):
    session = await coordinator.create_session(user, project.id)

    await coordinator.initialize_session(user, session.id, "https://override.example.com")

    assert backend.created[0].navigated_to == "https://override.example.com"


@pytest.mark.asyncio
async def test_initialize_twice_creates_one_handle(coordinator, user, project, backend):
    session = await coordinator.create_session(user, project.id)

    await coordinator.initialize_session(user, session.id)
    with pytest.raises(InvalidStateError):
        await coordinator.initialize_session(user, session.id)

    assert len(backend.created) == 1


@pytest.mark.asyncio
async def test_concurrent_initialize_creates_one_handle(coordinator, user, project, backend):
    backend.start_delay = 0.05
    session = await coordinator.create_session(user, project.id)

    results = await asyncio.gather(
        coordinator.initialize_session(user, session.id),
        coordinator.initialize_session(user, session.id),
        return_exceptions=True,
    )

    successes = [result for result in results if not isinstance(result, BaseException)]
    failures = [result for result in results if isinstance(result, BaseException)]
    assert len(backend.created) == 1
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidStateError)
    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.RUNNING


@pytest.mark.asyncio
async def test_initialize_failure_marks_session_failed(coordinator, user, project, backend, registry):
    backend.start_error = RuntimeError("chromium crashed")
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(EngineInitError):
        await coordinator.initialize_session(user, session.id)

    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.FAILED
    assert registry.lookup(session.id) is None


@pytest.mark.asyncio
async def test_initialize_fails_session_when_backend_cannot_create_handle(
    coordinator, user, project, backend, registry
):
    backend.create_error = ValueError("could not convert string to float: 'soon'")
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(EngineInitError, match="could not convert"):
        await coordinator.initialize_session(user, session.id)

    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.FAILED
    assert registry.lookup(session.id) is None
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_initialize_fails_session_on_unexpected_navigation_error(
    coordinator, user, project, backend, registry
):
    backend.navigate_error = KeyError("frame")
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(EngineInitError):
        await coordinator.initialize_session(user, session.id)

    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.FAILED
    assert registry.lookup(session.id) is None


@pytest.mark.asyncio
async def test_initialize_navigation_failure_releases_handle(
    coordinator, user, project, backend, registry
):
    backend.navigate_error = EngineActionError("net::ERR_NAME_NOT_RESOLVED")
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(EngineInitError, match="ERR_NAME_NOT_RESOLVED"):
        await coordinator.initialize_session(user, session.id)

    assert registry.lookup(session.id) is None
    assert backend.shutdowns == 1
    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.FAILED


@pytest.mark.asyncio
async def test_initialize_timeout_marks_session_failed(datastore, backend, user, project):
    backend.start_delay = 1.0
    coordinator = SessionCoordinator(
        datastore,
        EngineRegistry(backend, launch_timeout=0.01, shutdown_timeout=1.0),
        init_timeout=0.01,
        action_timeout=1.0,
    )
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(EngineTimeoutError):
        await coordinator.initialize_session(user, session.id)

    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.FAILED
    assert coordinator.registry.lookup(session.id) is None


@pytest.mark.asyncio
async def test_initialize_rejected_for_foreign_session(
    coordinator, user, other_user, project, backend
):
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(ForbiddenError):
        await coordinator.initialize_session(other_user, session.id)
    with pytest.raises(NotFoundError):
        await coordinator.initialize_session(user, "missing-session")

    assert backend.created == []


# Dispatch --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dispatch_records_exactly_one_action(coordinator, user, project):
    session = await _running_session(coordinator, user, project)

    outcome = await coordinator.dispatch_action(user, session.id, "Click the login link")

    assert outcome == ActionOutcome(success=True, message="Clicked the login link")
    actions = await coordinator.list_actions(user, session.id)
    assert len(actions) == 1
    assert actions[0].action_type == "nlp"
    assert actions[0].details == "Click the login link"
    assert actions[0].status == ActionStatus.SUCCESS
    stored = await coordinator.get_session(user, session.id)
    assert stored.last_used_at > session.last_used_at


@pytest.mark.asyncio
async def test_dispatch_failure_is_returned_and_recorded(coordinator, user, project, backend):
    session = await _running_session(coordinator, user, project)
    backend.action_error = EngineActionError("No element matches 'Buy now'")

    outcome = await coordinator.dispatch_action(user, session.id, "Click Buy now")

    assert outcome.success is False
    assert "Buy now" in outcome.message
    actions = await coordinator.list_actions(user, session.id)
    assert [action.status for action in actions] == [ActionStatus.FAILED]
    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.RUNNING


@pytest.mark.asyncio
async def test_dispatch_on_created_session_is_invalid_state(coordinator, user, project, backend):
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(InvalidStateError):
        await coordinator.dispatch_action(user, session.id, "Click anything")

    assert backend.created == []
    assert await coordinator.list_actions(user, session.id) == []


@pytest.mark.asyncio
async def test_dispatch_without_handle_is_engine_not_active(coordinator, user, project, registry):
    session = await _running_session(coordinator, user, project)
    await registry.release(session.id)

    with pytest.raises(EngineNotActiveError):
        await coordinator.dispatch_action(user, session.id, "Scroll down")

    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.RUNNING
    assert await coordinator.list_actions(user, session.id) == []


@pytest.mark.asyncio
async def test_dispatch_requires_instruction(coordinator, user, project):
    session = await _running_session(coordinator, user, project)

    with pytest.raises(ValidationError):
        await coordinator.dispatch_action(user, session.id, "   ")

    assert await coordinator.list_actions(user, session.id) == []


@pytest.mark.asyncio
async def test_dispatch_by_other_user_is_forbidden(coordinator, user, other_user, project, backend):
    session = await _running_session(coordinator, user, project)

    with pytest.raises(ForbiddenError):
        await coordinator.dispatch_action(other_user, session.id, "Click the login link")

    assert backend.created[0].instructions == []


@pytest.mark.asyncio
async def test_dispatch_timeout_records_failure(datastore, registry, backend, user, project):
    coordinator = SessionCoordinator(datastore, registry, init_timeout=1.0, action_timeout=0.01)
    session = await _running_session(coordinator, user, project)
    backend.action_delay = 1.0

    with pytest.raises(EngineTimeoutError):
        await coordinator.dispatch_action(user, session.id, "Wait forever")

    actions = await coordinator.list_actions(user, session.id)
    assert len(actions) == 1
    assert actions[0].status == ActionStatus.FAILED
    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.RUNNING


@pytest.mark.asyncio
async def test_dispatch_on_vanished_engine_fails_session(
    coordinator, user, project, backend, registry
):
    session = await _running_session(coordinator, user, project)
    backend.action_error = EngineUnavailableError("Target page, context or browser has been closed")

    outcome = await coordinator.dispatch_action(user, session.id, "Click the login link")

    assert outcome.success is False
    assert registry.lookup(session.id) is None
    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.FAILED
    assert len(await coordinator.list_actions(user, session.id)) == 1


@pytest.mark.asyncio
async def test_extraction_returns_data_and_records_action(coordinator, user, project):
    session = await _running_session(coordinator, user, project)

    outcome = await coordinator.dispatch_extraction(user, session.id, "Read the page heading")

    assert outcome.success is True
    assert outcome.data["data"] == "extracted: Read the page heading"
    actions = await coordinator.list_actions(user, session.id)
    assert [action.action_type for action in actions] == ["extract"]


@pytest.mark.asyncio
async def test_extraction_passes_custom_schema(coordinator, user, project):
    session = await _running_session(coordinator, user, project)
    schema = {"type": "object", "properties": {"price": {"type": "string"}}}

    outcome = await coordinator.dispatch_extraction(user, session.id, "Read the price", schema)

    assert outcome.data["schema_keys"] == ["properties", "type"]


@pytest.mark.asyncio
async def test_extraction_forwards_selector_and_text_mode(coordinator, user, project, backend):
    session = await _running_session(coordinator, user, project)

    await coordinator.dispatch_extraction(
        user,
        session.id,
        "Read the cart total",
        selector="#cart .total",
        text_only=True,
    )
    await coordinator.dispatch_extraction(user, session.id, "Read the page heading")

    assert backend.created[0].extraction_scopes == [("#cart .total", True), (None, False)]


@pytest.mark.asyncio
async def test_extraction_rejects_blank_selector(coordinator, user, project, backend):
    session = await _running_session(coordinator, user, project)

    with pytest.raises(ValidationError):
        await coordinator.dispatch_extraction(user, session.id, "Read the total", selector="  ")

    assert backend.created[0].extraction_scopes == []
    assert await coordinator.list_actions(user, session.id) == []


@pytest.mark.asyncio
async def test_concurrent_dispatch_records_every_action_on_one_handle(
    coordinator, user, project, backend, registry
):
    session = await _running_session(coordinator, user, project)
    backend.action_delay = 0.02
    instructions = [f"Click product tile {index}" for index in range(5)]

    outcomes = await asyncio.gather(
        *(coordinator.dispatch_action(user, session.id, text) for text in instructions)
    )

    assert all(outcome.success for outcome in outcomes)
    actions = await coordinator.list_actions(user, session.id)
    assert len(actions) == len(instructions)
    assert sorted(action.details for action in actions) == sorted(instructions)
    assert len(backend.created) == 1
    assert len(registry) == 1
    assert sorted(backend.created[0].instructions) == sorted(instructions)
    stored = await coordinator.get_session(user, session.id)
    assert stored.status == SessionStatus.RUNNING


# Termination and deletion ----------------------------------------------------


@pytest.mark.asyncio
async def test_terminate_completes_session(coordinator, user, project, backend, registry):
    session = await _running_session(coordinator, user, project)

    terminated = await coordinator.terminate_session(user, session.id)

    assert terminated.status == SessionStatus.COMPLETED
    assert terminated.container_id is None
    assert registry.lookup(session.id) is None
    assert backend.shutdowns == 1


@pytest.mark.asyncio
async def test_terminate_completes_even_when_shutdown_fails(coordinator, user, project, backend):
    session = await _running_session(coordinator, user, project)
    backend.shutdown_error = RuntimeError("browser process already exited")

    terminated = await coordinator.terminate_session(user, session.id)

    assert terminated.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminate_without_handle_still_completes(coordinator, user, project, registry):
    session = await _running_session(coordinator, user, project)
    await registry.release(session.id)

    terminated = await coordinator.terminate_session(user, session.id)

    assert terminated.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminate_requires_running_session(coordinator, user, project):
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(InvalidStateError, match="Only running sessions"):
        await coordinator.terminate_session(user, session.id)


@pytest.mark.asyncio
async def test_terminate_twice_reports_session_already_ended(coordinator, user, project, backend):
    session = await _running_session(coordinator, user, project)
    await coordinator.terminate_session(user, session.id)

    with pytest.raises(InvalidStateError, match="already ended"):
        await coordinator.terminate_session(user, session.id)

    assert backend.shutdowns == 1


@pytest.mark.asyncio
async def test_dispatch_after_terminate_is_invalid_state(coordinator, user, project):
    session = await _running_session(coordinator, user, project)
    await coordinator.terminate_session(user, session.id)

    with pytest.raises(InvalidStateError):
        await coordinator.dispatch_action(user, session.id, "Click the login link")


@pytest.mark.asyncio
async def test_delete_session_removes_actions_and_handle(
    coordinator, datastore, user, project, registry
):
    session = await _running_session(coordinator, user, project)
    await coordinator.dispatch_action(user, session.id, "Click the login link")

    await coordinator.delete_session(user, session.id)

    assert registry.lookup(session.id) is None
    assert await datastore.get_session(session.id) is None
    assert await datastore.list_actions(session.id) == []
    with pytest.raises(NotFoundError):
        await coordinator.get_session(user, session.id)


@pytest.mark.asyncio
async def test_delete_unknown_session_releases_stray_handle(coordinator, user, registry, backend):
    await registry.acquire_or_create("orphan")

    await coordinator.delete_session(user, "orphan")

    assert registry.lookup("orphan") is None
    assert backend.shutdowns == 1


@pytest.mark.asyncio
async def test_delete_session_of_other_user_is_forbidden(
    coordinator, datastore, user, other_user, project
):
    session = await coordinator.create_session(user, project.id)

    with pytest.raises(ForbiddenError):
        await coordinator.delete_session(other_user, session.id)

    assert await datastore.get_session(session.id) is not None


# Projects and listings -------------------------------------------------------


@pytest.mark.asyncio
async def test_project_listing_counts_sessions(coordinator, user, other_user, project):
    await coordinator.create_session(user, project.id)
    await coordinator.create_session(user, project.id)
    await coordinator.create_project(other_user, "Someone else's")

    projects = await coordinator.list_projects(user)

    assert [(item.name, item.session_count) for item in projects] == [("Checkout flows", 2)]


@pytest.mark.asyncio
async def test_create_project_requires_name(coordinator, user):
    with pytest.raises(ValidationError):
        await coordinator.create_project(user, "  ")


@pytest.mark.asyncio
async def test_list_sessions_scoped_to_user(coordinator, user, other_user, project):
    first = await coordinator.create_session(user, project.id)
    second = await coordinator.create_session(user, project.id)
    foreign_project = await coordinator.create_project(other_user, "Other")
    await coordinator.create_session(other_user, foreign_project.id)

    sessions = await coordinator.list_sessions(user)

    assert [session.id for session in sessions] == [second.id, first.id]
    with pytest.raises(ForbiddenError):
        await coordinator.list_sessions(user, foreign_project.id)


@pytest.mark.asyncio
async def test_delete_project_releases_running_sessions(
    coordinator, datastore, user, project, registry
):
    session = await _running_session(coordinator, user, project)

    await coordinator.delete_project(user, project.id)

    assert registry.lookup(session.id) is None
    assert await datastore.get_project(project.id) is None
    assert await datastore.get_session(session.id) is None


@pytest.mark.asyncio
async def test_shutdown_releases_all_handles(coordinator, user, project, backend):
    await _running_session(coordinator, user, project)
    await _running_session(coordinator, user, project)

    await coordinator.registry.release_all()

    assert backend.shutdowns == 2
    assert len(coordinator.registry) == 0
