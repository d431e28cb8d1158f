"""
pipewatch.sources — remote pipeline source adapters.

  BaseSource    — abstract interface used by the ingestion components
  GitLabSource  — GitLab REST v4 (pipelines, users, projects, groups)
"""

from pipewatch.sources.base import BaseSource
from pipewatch.sources.gitlab import GitLabSource

__all__ = [
    "BaseSource",
    "GitLabSource",
]
