"""
Runtime object spawning.

Entities spawned with an `object_from_url` component are filled in from the
object document at that URL. Loads run in the background on the asset cache;
their results reach the live world only through the command queue, which the
loop owning the world drains once per tick.
"""

from __future__ import annotations

import asyncio
import queue
from collections import defaultdict
from typing import Callable

import structlog

from fab_pipeline.asset_cache import AssetCache
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import FabPipelineError
from fab_pipeline.objects.loader import ObjectFromUrl, object_document_url
from fab_pipeline.settings import Settings
from fab_pipeline.world import World

logger = structlog.get_logger()

Command = Callable[[World], None]


class CommandQueue:
    """Bounded queue of world mutations produced off the main loop."""

    def __init__(self, maxsize: int = 1024) -> None:
        if maxsize < 1:
            raise ValueError(f"Command queue capacity must be at least 1, got {maxsize}")
        self._queue: queue.Queue[Command] = queue.Queue(maxsize=maxsize)

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, command: Command) -> None:
        self._queue.put_nowait(command)

    def drain(self, world: World) -> int:
        """Apply every queued command to `world`; returns how many ran."""
        applied = 0
        while True:
            try:
                command = self._queue.get_nowait()
            except queue.Empty:
                return applied
            command(world)
            applied += 1


class ObjectFromUrlSystem:
    """Resolves `object_from_url` components into the object's components."""

    def __init__(self, assets: AssetCache, commands: CommandQueue | None = None) -> None:
        self.assets = assets
        self.commands = commands if commands is not None else CommandQueue()
        self._seen: set[int] = set()
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, assets: AssetCache, settings: Settings) -> ObjectFromUrlSystem:
        return cls(assets, CommandQueue(settings.command_queue_size))

    def tick(self, world: World) -> int:
        """
        Start loads for entities that gained `object_from_url` since the last tick.

        Entities asking for the same object share one load. Returns the number
        of loads started.
        """
        requests: dict[str, list[int]] = defaultdict(list)
        for entity, (url,) in world.query("object_from_url"):
            if entity in self._seen:
                continue
            self._seen.add(entity)
            try:
                document_url = object_document_url(url)
            except FabPipelineError as e:
                logger.error("Invalid object url", entity=entity, url=url, error=str(e))
                continue
            requests[document_url.url].append(entity)

        for url, entities in requests.items():
            task = asyncio.get_running_loop().create_task(
                self._load(AbsAssetUrl(url), entities)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(requests)

    async def _load(self, url: AbsAssetUrl, entities: list[int]) -> None:
        try:
            obj = await ObjectFromUrl(url).get(self.assets)
            components = obj.clone_entity(obj.root_child())
        except FabPipelineError as e:
            logger.error(
                "Failed to load object",
                url=url.url,
                entities=entities,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        def apply(world: World) -> None:
            for entity in entities:
                if entity in world:
                    world.add_components(entity, components)

        try:
            self.commands.put(apply)
        except queue.Full:
            logger.error(
                "Command queue full; object will be requested again",
                url=url.url,
                entities=entities,
                capacity=self.commands.maxsize,
            )
            self._seen.difference_update(entities)

    async def wait_idle(self) -> None:
        """Wait for every background load started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
