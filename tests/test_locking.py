"""Tests for the flock-based exclusive_lock helper."""

import asyncio
from pathlib import Path

import pytest

from wsl_port_forwarder.exceptions import ConfigError, LockTimeoutError
from wsl_port_forwarder.locking import exclusive_lock


async def test_creates_parent_directories(tmp_path: Path) -> None:
    lock_path = tmp_path / "state" / "nested" / "reconcile.lock"
    async with exclusive_lock(lock_path, timeout=1.0):
        assert lock_path.exists()
    # Lock files are kept after release
    assert lock_path.exists()


async def test_second_holder_times_out(tmp_path: Path) -> None:
    lock_path = tmp_path / "reconcile.lock"
    async with exclusive_lock(lock_path, timeout=1.0):
        with pytest.raises(LockTimeoutError) as exc_info:
            async with exclusive_lock(lock_path, timeout=0.2):
                pass
    assert exc_info.value.context["path"] == str(lock_path)


async def test_reacquire_after_release(tmp_path: Path) -> None:
    lock_path = tmp_path / "reconcile.lock"
    async with exclusive_lock(lock_path, timeout=1.0):
        pass
    async with exclusive_lock(lock_path, timeout=0.2):
        pass


async def test_waiter_acquires_when_holder_releases(tmp_path: Path) -> None:
    lock_path = tmp_path / "reconcile.lock"
    order: list[str] = []

    async def holder() -> None:
        async with exclusive_lock(lock_path, timeout=1.0):
            order.append("holder-in")
            await asyncio.sleep(0.2)
            order.append("holder-out")

    async def waiter() -> None:
        await asyncio.sleep(0.05)
        async with exclusive_lock(lock_path, timeout=5.0):
            order.append("waiter-in")

    await asyncio.gather(holder(), waiter())

    assert order == ["holder-in", "holder-out", "waiter-in"]


async def test_lock_released_on_exception(tmp_path: Path) -> None:
    lock_path = tmp_path / "reconcile.lock"
    with pytest.raises(ValueError, match="boom"):
        async with exclusive_lock(lock_path, timeout=1.0):
            raise ValueError("boom")

    async with exclusive_lock(lock_path, timeout=0.2):
        pass


async def test_unwritable_directory_raises_config_error(tmp_path: Path) -> None:
    blocker = tmp_path / "state"
    blocker.write_text("not a directory")
    lock_path = blocker / "reconcile.lock"

    with pytest.raises(ConfigError, match="Cannot open lock file") as exc_info:
        async with exclusive_lock(lock_path, timeout=0.2):
            pass
    assert exc_info.value.context["path"] == str(lock_path)
