"""
registry.py - Explicit service container.

Wires every component once, at startup, and hands the wired instances to
whoever needs them (API app, CLI, worker pool, tests). There is no process
global: each call to ``build_container`` returns an independent graph.

Usage:
    from flowmachine.runtime.registry import build_container

    container = build_container()                  # settings from runtime.yaml
    job_id = container.jobs.create_and_schedule(flow_id, "manual")
    container.queue.drain(container.executor.execute)

    # tests
    container = build_container(db_path=":memory:", files_dir=tmp_path, provider=fake)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import httpx

from flowmachine.ai.chat import ChatAgent
from flowmachine.ai.directives import DirectiveComposer, default_directive_composer
from flowmachine.ai.global_tools import default_tool_registry
from flowmachine.ai.providers import ProviderClient, create_provider
from flowmachine.ai.step import AIStep
from flowmachine.ai.tools import ToolDiscovery, ToolRegistry
from flowmachine.config.runtime_config import (
    get_ai_settings,
    get_queue_settings,
    get_setting,
    get_storage_settings,
)
from flowmachine.handlers import HandlerRegistry, default_handler_registry
from flowmachine.runtime.db import Store
from flowmachine.runtime.dedup import DedupTracker
from flowmachine.runtime.errors import ConfigurationError
from flowmachine.runtime.executor import StepExecutor
from flowmachine.runtime.jobs import JobLifecycleManager
from flowmachine.runtime.packets import DataPacketChannel
from flowmachine.runtime.pipelines import PipelineManager
from flowmachine.runtime.queue import JobQueue, WorkerPool
from flowmachine.runtime.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class Container:
    """Wired services."""

    store: Store
    channel: DataPacketChannel
    dedup: DedupTracker
    queue: JobQueue
    handlers: HandlerRegistry
    pipelines: PipelineManager
    jobs: JobLifecycleManager
    tools: ToolRegistry
    discovery: ToolDiscovery
    composer: DirectiveComposer
    provider: Optional[ProviderClient]
    chat: Optional[ChatAgent]
    executor: StepExecutor
    scheduler: Scheduler
    workers: WorkerPool

    def run_pending(self, max_tasks: Optional[int] = None) -> int:
        """Process queued steps on the calling thread."""
        return self.queue.drain(self.executor.execute, max_tasks=max_tasks)

    def start(self) -> None:
        self.workers.start()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.workers.stop()

    def close(self) -> None:
        self.stop()
        self.store.close()


def build_container(
    db_path: Optional[Union[str, Path]] = None,
    files_dir: Optional[Union[str, Path]] = None,
    provider: Optional[ProviderClient] = None,
    handlers: Optional[HandlerRegistry] = None,
    tools: Optional[ToolRegistry] = None,
    composer: Optional[DirectiveComposer] = None,
    http_client: Optional[httpx.Client] = None,
    max_turns: Optional[int] = None,
) -> Container:
    """Build the service graph.

    Arguments override the matching runtime configuration. When no provider
    is given one is created from ``ai.*`` settings; if that fails, AI steps
    fail their jobs with a configuration error.
    """
    storage = get_storage_settings()
    queue_settings = get_queue_settings()
    ai_settings = get_ai_settings()

    store = Store(db_path if db_path is not None else storage.db_path)
    channel = DataPacketChannel(
        files_dir if files_dir is not None else storage.files_dir,
        inline_threshold_bytes=storage.inline_threshold_bytes,
    )
    dedup = DedupTracker(store)
    queue = JobQueue(
        store,
        visibility_timeout_seconds=queue_settings.visibility_timeout_seconds,
        max_attempts=queue_settings.max_attempts,
        retry_backoff_seconds=queue_settings.retry_backoff_seconds,
    )
    handlers = handlers if handlers is not None else default_handler_registry(client=http_client)
    pipelines = PipelineManager(store, handlers)
    jobs = JobLifecycleManager(store, pipelines, queue, channel)

    tools = tools if tools is not None else default_tool_registry(pipelines, jobs, client=http_client)
    discovery = ToolDiscovery(tools, handlers, pipelines)
    composer = composer if composer is not None else default_directive_composer()

    if provider is None:
        try:
            provider = create_provider(ai_settings, client=http_client)
        except ConfigurationError as e:
            logger.warning("AI provider unavailable: %s", e.message)

    turns = max_turns if max_turns is not None else ai_settings.max_turns
    ai_step = None
    chat = None
    if provider is not None:
        ai_step = AIStep(provider, discovery, composer, pipelines, handlers, max_turns=turns)
        chat = ChatAgent(provider, discovery, composer, max_turns=turns)

    executor = StepExecutor(
        jobs,
        pipelines,
        channel,
        queue,
        handlers,
        dedup,
        ai_step=ai_step,
        step_lease_seconds=queue_settings.step_lease_seconds,
    )
    scheduler = Scheduler(
        store,
        jobs,
        poll_interval_seconds=float(get_setting("scheduler.poll_interval_seconds", 30)),
    )
    workers = WorkerPool(
        queue,
        executor.execute,
        workers=queue_settings.workers,
        poll_interval_seconds=queue_settings.poll_interval_seconds,
    )
    logger.debug("Container built (db=%s, provider=%s)", store.db_path, getattr(provider, "name", None))

    return Container(
        store=store,
        channel=channel,
        dedup=dedup,
        queue=queue,
        handlers=handlers,
        pipelines=pipelines,
        jobs=jobs,
        tools=tools,
        discovery=discovery,
        composer=composer,
        provider=provider,
        chat=chat,
        executor=executor,
        scheduler=scheduler,
        workers=workers,
    )
