"""Fire-and-forget dispatch via RQ with synchronous fallback.

Side effects that must not hold up (or roll back) a learner action, such as
notifications, go through ``enqueue``. With REDIS_URL configured and
reachable the job lands on the RQ queue named by TASK_QUEUE; otherwise it
runs inline once the caller has committed.

Usage:
    from tasks import enqueue
    enqueue(deliver_notification, learner_id, "level_up", title, message)
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

_queue = None


def init_tasks(app) -> None:
    """Bind the RQ queue if Redis is available. Call once from create_app()."""
    global _queue
    _queue = None

    redis_url = app.config.get("REDIS_URL", "")
    if not redis_url:
        app.logger.info("Task backend: synchronous (no REDIS_URL)")
        return

    try:
        import redis
        from rq import Queue
        conn = redis.Redis.from_url(redis_url)
        conn.ping()
        _queue = Queue(app.config.get("TASK_QUEUE", "progress"), connection=conn)
        app.logger.info("Task backend: RQ queue %r (%s)", _queue.name, redis_url)
    except Exception as e:
        app.logger.warning("Task backend: synchronous (Redis error: %s)", e)


def enqueue(func, *args, **kwargs):
    """Hand ``func`` to the worker queue, or call it now if there is none.

    Returns the RQ job, or the function's return value when run inline.
    """
    if _queue is not None:
        try:
            job = _queue.enqueue(func, *args, **kwargs)
            logger.debug("Enqueued %s (job=%s)", func.__name__, job.id)
            return job
        except Exception as e:
            logger.warning("RQ enqueue failed (%s), running inline: %s", func.__name__, e)

    logger.debug("Running %s synchronously", func.__name__)
    return func(*args, **kwargs)
