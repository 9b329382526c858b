"""
Railway deployment orchestration.

Runs Railway CLI operations for multi-service projects on behalf of many
workspaces and streams deployment progress over Redis pub/sub.
"""

__version__ = "0.1.0"
