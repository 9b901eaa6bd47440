"""Fixtures for coordinator unit tests."""

import asyncio
from collections.abc import Callable

import pytest


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until it holds or the timeout elapses."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def until() -> Callable:
    return wait_until
