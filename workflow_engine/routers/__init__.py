"""API routers for the Batch Workflow Execution Engine."""

from workflow_engine.routers import batches, config, queue

__all__ = ["batches", "config", "queue"]
