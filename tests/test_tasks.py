"""Tests for tasks.py: synchronous fallback and RQ dispatch."""

from __future__ import annotations


def _sample_task(x, y):
    return x + y


def _sample_task_with_kwargs(x, multiplier=1):
    return x * multiplier


class TestSynchronousFallback:
    def test_enqueue_runs_sync_without_redis(self, app):
        from tasks import enqueue
        assert enqueue(_sample_task, 3, 4) == 7

    def test_enqueue_with_kwargs(self, app):
        from tasks import enqueue
        assert enqueue(_sample_task_with_kwargs, 3, multiplier=5) == 15


class TestInitTasks:
    def test_init_without_redis_url(self, app):
        import tasks
        tasks.init_tasks(app)
        assert tasks._queue is None

    def test_init_with_unreachable_redis(self, app):
        import tasks
        app.config["REDIS_URL"] = "redis://127.0.0.1:1/0"
        tasks.init_tasks(app)
        assert tasks._queue is None

    def test_rq_queue_when_redis_reachable(self, app, fake_redis, monkeypatch):
        import redis
        import tasks
        monkeypatch.setattr(redis.Redis, "from_url", staticmethod(lambda url: fake_redis))
        monkeypatch.setattr(tasks, "_queue", None)
        app.config["REDIS_URL"] = "redis://queue:6379/0"
        tasks.init_tasks(app)
        assert tasks._queue.name == "progress"
        job = tasks.enqueue(_sample_task, 1, 2)
        assert job.id
        assert job.get_status() == "queued"
