"""Tests for the run context and single-instance lock."""

from __future__ import annotations

import logging
import os
import threading
from typing import TYPE_CHECKING

import pytest

import vcf_sync
from vcf_sync import AlreadyRunningError, InstanceLock, RunContext, lock_path_for

from .conftest import write_card

if TYPE_CHECKING:
    from pathlib import Path


class TestInstanceLock:
    def test_second_context_on_same_destination_fails(self, source: Path, dest: Path, lock_dir: Path) -> None:
        with RunContext(source, dest, lock_dir=lock_dir):
            with pytest.raises(AlreadyRunningError, match=str(os.getpid())):
                with RunContext(source, dest, lock_dir=lock_dir):
                    pass  # pragma: no cover
        assert not dest.exists()

    def test_lock_is_released_on_exit(self, source: Path, dest: Path, lock_dir: Path) -> None:
        with RunContext(source, dest, lock_dir=lock_dir) as ctx:
            lock_file = ctx.lock.path
            assert lock_file.read_text(encoding="utf-8") == str(os.getpid())
        assert not ctx.lock.held
        assert lock_file.read_text(encoding="utf-8") == ""

        with RunContext(source, dest, lock_dir=lock_dir):
            pass

    def test_lock_is_released_on_error(self, source: Path, dest: Path, lock_dir: Path) -> None:
        with pytest.raises(RuntimeError):
            with RunContext(source, dest, lock_dir=lock_dir):
                raise RuntimeError("boom")
        assert [p for p in lock_dir.iterdir() if p.is_dir()] == []

        with RunContext(source, dest, lock_dir=lock_dir):
            pass

    def test_different_destinations_do_not_collide(self, source: Path, tmp_path: Path, lock_dir: Path) -> None:
        with RunContext(source, tmp_path / "one", lock_dir=lock_dir):
            with RunContext(source, tmp_path / "two", lock_dir=lock_dir):
                pass

    def test_same_destination_spelled_differently(self, tmp_path: Path, lock_dir: Path) -> None:
        (tmp_path / "d").mkdir()
        assert lock_path_for(tmp_path / "d", lock_dir) == lock_path_for(tmp_path / "d" / ".." / "d", lock_dir)

    def test_lock_file_left_by_dead_owner_is_free(self, tmp_path: Path) -> None:
        path = tmp_path / "x.lock"
        path.write_text("999999", encoding="utf-8")

        lock = InstanceLock(path)
        lock.acquire()
        assert path.read_text(encoding="utf-8") == str(os.getpid())
        lock.release()

    def test_contenders_for_a_stale_lock_get_one_winner(self, tmp_path: Path) -> None:
        path = tmp_path / "x.lock"
        path.write_text("999999", encoding="utf-8")
        locks = [InstanceLock(path) for _ in range(8)]
        barrier = threading.Barrier(len(locks))
        refused: list[InstanceLock] = []

        def contend(lock: InstanceLock) -> None:
            barrier.wait()
            try:
                lock.acquire()
            except AlreadyRunningError:
                refused.append(lock)

        threads = [threading.Thread(target=contend, args=(lock,)) for lock in locks]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        try:
            assert sum(lock.held for lock in locks) == 1
            assert len(refused) == len(locks) - 1
        finally:
            for lock in locks:
                lock.release()

    def test_late_contender_leaves_holder_alone(self, tmp_path: Path) -> None:
        path = tmp_path / "x.lock"
        first = InstanceLock(path)
        first.acquire()
        try:
            with pytest.raises(AlreadyRunningError, match=str(os.getpid())):
                InstanceLock(path).acquire()
            assert first.held
            assert path.read_text(encoding="utf-8") == str(os.getpid())
        finally:
            first.release()


class TestScratch:
    def test_scratch_and_leftover_temps_are_removed(self, source: Path, dest: Path, lock_dir: Path) -> None:
        dest.mkdir()
        with RunContext(source, dest, lock_dir=lock_dir) as ctx:
            scratch = ctx.scratch_dir
            assert scratch is not None and scratch.is_dir()
            assert scratch.name.startswith(f"vcf_sync_{os.getpid()}_")
            fd, tmp = vcf_sync._new_temp(dest / "a.vcf", ctx)
            os.close(fd)
            assert ctx.in_flight == 1
        assert not scratch.exists()
        assert not tmp.exists()

    def test_temp_dir_is_scratch_on_same_filesystem(self, source: Path, dest: Path, lock_dir: Path) -> None:
        dest.mkdir()
        with RunContext(source, dest, lock_dir=lock_dir) as ctx:
            chosen = ctx.temp_dir_for(dest / "a.vcf")
            if os.stat(ctx.scratch_dir).st_dev == os.stat(dest).st_dev:
                assert chosen == ctx.scratch_dir
            else:
                assert chosen == dest

    def test_killed_run_leaves_nothing_after_next_run(
        self, source: Path, dest: Path, lock_dir: Path, logger: logging.Logger, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        write_card(source / "a.vcf")
        dest.mkdir()

        killed = RunContext(source, dest, lock_dir=lock_dir).__enter__()
        fd, tmp = vcf_sync._new_temp(dest / "a.vcf", killed)
        os.write(fd, b"BEGIN:VCARD\r\nN:Sm")
        os.close(fd)
        stale_scratch = killed.scratch_dir
        # SIGKILL: the kernel drops the lock, nothing else is cleaned up
        killed.lock.release()
        assert stale_scratch is not None and tmp.exists()

        monkeypatch.setattr(vcf_sync, "_pid_alive", lambda pid: False)
        with RunContext(source, dest, lock_dir=lock_dir) as ctx:
            assert ctx.stale_scratch == [stale_scratch]
            vcf_sync.run_pass(ctx, logger)

        assert not tmp.exists()
        assert not stale_scratch.exists()
        assert [p for p in lock_dir.iterdir() if p.is_dir()] == []
        assert list(dest.rglob("*.tmp")) == []
        assert (dest / "a.vcf").read_bytes() == (source / "a.vcf").read_bytes()

    def test_live_owners_scratch_is_kept(self, lock_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        lock_dir.mkdir()
        alive = lock_dir / "vcf_sync_4242_abc"
        dead = lock_dir / "vcf_sync_999999_def"
        unrelated = lock_dir / "vcf_sync_notapid"
        for d in (alive, dead, unrelated):
            d.mkdir()
        monkeypatch.setattr(vcf_sync, "_pid_alive", lambda pid: pid == 4242)

        assert vcf_sync.sweep_stale_scratch(lock_dir) == [dead]
        assert alive.is_dir() and unrelated.is_dir()

    def test_destination_untouched_when_already_running(
        self, source: Path, dest: Path, lock_dir: Path, logger: object
    ) -> None:
        write_card(source / "a.vcf")
        with RunContext(source, dest, lock_dir=lock_dir):
            with pytest.raises(AlreadyRunningError):
                with RunContext(source, dest, process=True, lock_dir=lock_dir) as second:
                    vcf_sync.run_pass(second, logger)  # pragma: no cover
        assert not dest.exists()
