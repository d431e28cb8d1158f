"""
pipewatch.store — durable DuckDB persistence.

    from pipewatch.store import PipelineStore
"""

from pipewatch.store.pipeline_store import PipelineStore

__all__ = ["PipelineStore"]
