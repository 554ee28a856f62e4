# flake8: noqa F401
"""Asynchronous render cycles for views, with debounced progress and hydration from seeds."""

from django_async_render.app_settings import AsyncRenderSettings, app_settings
from django_async_render.context import current_cycle
from django_async_render.cycle import CycleState, RenderCycle
from django_async_render.errors import (
    AsyncRenderError,
    MissingProgressDeclaration,
    RenderInterrupted,
    SeedValidationError,
)
from django_async_render.events import EventBus, RenderEvent
from django_async_render.hooks import use_previous_props, use_progress, use_render_event
from django_async_render.progress import ProgressCandidate, ProgressScheduler
from django_async_render.registry import (
    AcquireResult,
    InstanceRegistry,
    get_default_registry,
    get_default_seed_store,
    plant,
)
from django_async_render.seeds import Seed, SeedStore
from django_async_render.signals import cycle_cancelled, cycle_settled, cycle_started
from django_async_render.view import AsyncView, FunctionView, async_view, collect_seeds

__all__ = [
    "AcquireResult",
    "AsyncRenderError",
    "AsyncRenderSettings",
    "AsyncView",
    "CycleState",
    "EventBus",
    "FunctionView",
    "InstanceRegistry",
    "MissingProgressDeclaration",
    "ProgressCandidate",
    "ProgressScheduler",
    "RenderCycle",
    "RenderEvent",
    "RenderInterrupted",
    "Seed",
    "SeedStore",
    "SeedValidationError",
    "app_settings",
    "async_view",
    "collect_seeds",
    "current_cycle",
    "cycle_cancelled",
    "cycle_settled",
    "cycle_started",
    "get_default_registry",
    "get_default_seed_store",
    "plant",
    "use_previous_props",
    "use_progress",
    "use_render_event",
]
