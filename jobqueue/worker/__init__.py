"""
Worker module.
Contains the worker pool and the handler registry.
"""

from jobqueue.worker.handlers import HandlerRegistry, default_registry, register_handler
from jobqueue.worker.main import WorkerPool, run

__all__ = ["WorkerPool", "HandlerRegistry", "default_registry", "register_handler", "run"]
