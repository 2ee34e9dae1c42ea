"""Factories for constructing components from configuration."""

from __future__ import annotations

from .config import EngineConfig, ServiceConfig
from .coordinator.registry import EngineRegistry
from .coordinator.service import SessionCoordinator
from .engine.base import EngineBackend
from .engine.playwright_engine import PlaywrightBackend
from .engine.remote import RemoteBackend
from .engine.scripted import ScriptedBackend
from .llm.base import InstructionPlanner
from .llm.openai_client import OpenAIChatPlanner
from .store.database import Datastore


def build_planner(config: EngineConfig, api_key: str) -> InstructionPlanner:
    return OpenAIChatPlanner(config, api_key=api_key)


def build_backend(config: EngineConfig) -> EngineBackend:
    backend = config.backend.lower()
    if backend == "playwright":
        return PlaywrightBackend(config, build_planner)
    if backend == "remote":
        return RemoteBackend(config)
    if backend == "scripted":
        return ScriptedBackend(config)
    raise ValueError(f"Unsupported engine backend: {config.backend}")


def build_registry(config: ServiceConfig) -> EngineRegistry:
    return EngineRegistry(
        build_backend(config.engine),
        launch_timeout=config.init_timeout,
        shutdown_timeout=config.shutdown_timeout,
    )


def build_datastore(config: ServiceConfig) -> Datastore:
    return Datastore(config.database.url, echo=config.database.echo)


def build_coordinator(config: ServiceConfig) -> SessionCoordinator:
    return SessionCoordinator(
        build_datastore(config),
        build_registry(config),
        default_start_url=config.default_start_url,
        init_timeout=config.init_timeout,
        action_timeout=config.action_timeout,
    )
