"""Refresh modules run alongside replication in a global sync cycle."""

from .jenkins import JenkinsRefreshModule
from .news import NewsRefreshModule

__all__ = ["JenkinsRefreshModule", "NewsRefreshModule"]
