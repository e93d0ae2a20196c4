"""Distributed worker process: ``authority-worker``.

Listens on the high, normal and low queues in that order. Run as many of
these as needed against the same Redis.
"""
from __future__ import annotations

import logging

from rq import Worker

from . import diagnostics
from .backends import DistributedBackend
from .config import get_settings

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if settings.diagnostics:
        diagnostics.enable()

    backend = DistributedBackend.connect(settings)
    worker = Worker(list(backend.queues.values()), connection=backend.connection)
    logger.info("Worker listening on %s", ", ".join(q.name for q in backend.queues.values()))
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
