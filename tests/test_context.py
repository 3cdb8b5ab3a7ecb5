"""Tests for the per-user session context."""

import threading
from datetime import timedelta

import pytest

from database import DatabaseEntityStore, init_db, reset_engine
from invoicing.engine import InvoiceLockRegistry
from invoicing.errors import UpstreamFailure
from server.context import SessionContext
from state_machine.models import TimerState, utcnow

from conftest import add_task, log_hours


def open_context(store):
    return SessionContext(store, locks=InvoiceLockRegistry()).open()


class TestTimerPersistence:
    def test_running_timer_restored_in_new_context(self, store) -> None:
        task = add_task(store)
        first = open_context(store)
        first.start_timer(task.id)
        first.close()

        second = open_context(store)

        assert second.timer.is_running
        assert second.timer.task_id == task.id
        second.close()

    def test_elapsed_time_recomputed_from_start(self, store) -> None:
        task = add_task(store)
        started = utcnow() - timedelta(minutes=30)
        store.save_timer_state(
            TimerState(task_id=task.id, is_running=True, start_time=started, seconds=600)
        )

        context = open_context(store)

        assert context.timer.elapsed_seconds() >= 600 + 30 * 60
        context.close()

    def test_pause_and_stop_are_saved(self, store) -> None:
        task = add_task(store)
        context = open_context(store)
        context.start_timer(task.id)

        context.pause_timer()
        assert store.get_timer_state().is_running is False

        context.stop_timer()
        saved = store.get_timer_state()
        assert saved.task_id is None
        assert saved.seconds == 0
        context.close()

    def test_failed_save_keeps_previous_state(self, store, monkeypatch) -> None:
        task = add_task(store)
        context = open_context(store)

        def unavailable(state):
            raise UpstreamFailure("Database unavailable", service="database")

        monkeypatch.setattr(store, "save_timer_state", unavailable)

        with pytest.raises(UpstreamFailure):
            context.start_timer(task.id)
        assert not context.timer.is_running
        context.close()

    def test_deleting_timer_task_resets_timer(self, store) -> None:
        task = add_task(store)
        context = open_context(store)
        context.start_timer(task.id)

        store.delete_task(task.id)

        assert context.timer.task_id is None
        assert store.get_timer_state().task_id is None
        context.close()

    def test_timer_saved_in_database(self, tmp_path) -> None:
        reset_engine()
        init_db(f"sqlite:///{tmp_path / 'timer.db'}")
        try:
            store = DatabaseEntityStore("owner-1")
            task = add_task(store)
            open_context(store).start_timer(task.id)

            restored = open_context(DatabaseEntityStore("owner-1"))

            assert restored.timer.is_running
            assert restored.timer.task_id == task.id
        finally:
            reset_engine()


class TestCacheRefresh:
    def test_failed_refresh_reloads_on_next_read(self, store, monkeypatch) -> None:
        context = open_context(store)
        calls = {"count": 0}
        original_get_task = store.get_task

        def flaky_get_task(task_id):
            calls["count"] += 1
            if calls["count"] == 1:
                raise UpstreamFailure("Database unavailable", service="database")
            return original_get_task(task_id)

        monkeypatch.setattr(store, "get_task", flaky_get_task)

        task = add_task(store, "Fresh")

        assert [t.id for t in context.list_tasks()] == [task.id]
        assert context.counts()["tasks"] == 1
        context.close()

    def test_concurrent_writes_all_cached(self, store) -> None:
        task = add_task(store)
        context = open_context(store)

        def write_logs():
            for _ in range(20):
                log_hours(store, task, "1")
                context.list_time_logs()

        threads = [threading.Thread(target=write_logs) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(context.list_time_logs()) == 80
        assert context.counts()["timeLogs"] == len(store.list_time_logs())
        context.close()

    def test_close_clears_cache(self, store) -> None:
        add_task(store)
        context = open_context(store)

        context.close()

        assert context.list_tasks() == []
        assert context.counts()["tasks"] == 0
