"""
Job Services

Transactional outbox for post-transition work and the worker that drains it.
"""

from .outbox import OutboxService
from .worker import JobWorker, build_default_handlers

__all__ = [
    'OutboxService',
    'JobWorker',
    'build_default_handlers',
]
