"""Global test configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from lmchat.schemas.error_models import GenerationError, NotReadyError


class StubContainer:
    """Scripted stand-in for ``ModelContainer``.

    Each ``stream_generate`` call pops the next fragment list from ``script``
    (falling back to ``default``) and records what it was sent. ``fail_after``
    makes a call raise ``error`` once that many fragments were yielded, and
    ``gate`` pauses every fragment until the event is set.
    """

    def __init__(
        self,
        script: Optional[List[List[str]]] = None,
        default: Optional[List[str]] = None,
        fail_after: Optional[int] = None,
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        supports_images: bool = False,
        loaded: bool = True
    ):
        self.script = list(script or [])
        self.default = default or ["ok"]
        self.fail_after = fail_after
        self.error = error or GenerationError("backend exploded")
        self.gate = gate
        self.supports_images = supports_images
        self.loaded = loaded
        self.calls: List[Dict[str, Any]] = []
        self.closed_streams = 0

    def is_loaded(self) -> bool:
        return self.loaded

    def ensure_loaded(self) -> None:
        if not self.loaded:
            raise NotReadyError("stub container is not loaded")

    async def stream_generate(self, messages, images=None, parameters=None):
        self.calls.append({
            "messages": messages,
            "images": list(images or []),
            "parameters": parameters,
        })
        fragments = self.script.pop(0) if self.script else list(self.default)
        try:
            for index, fragment in enumerate(fragments):
                if self.fail_after is not None and index == self.fail_after:
                    raise self.error
                if self.gate is not None:
                    await self.gate.wait()
                yield fragment
            if self.fail_after is not None and self.fail_after >= len(fragments):
                raise self.error
        finally:
            self.closed_streams += 1


@pytest.fixture
def stub_container():
    """Loaded text-only stub container."""
    return StubContainer()


@pytest.fixture
def vision_container():
    """Loaded stub container that accepts images."""
    return StubContainer(supports_images=True)


@pytest.fixture
def make_container():
    """Factory for stub containers with custom scripts and failures."""
    return StubContainer


@pytest.fixture
def wait_until():
    """Yield to the event loop until a predicate holds."""
    async def _wait_until(predicate, attempts: int = 100) -> None:
        for _ in range(attempts):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError("condition not reached")
    return _wait_until
