"""
データレイヤーモジュール

Asana API との通信、流量制御、データモデルを提供
"""

from .models import (
    ResourceRef, User, Workspace, Project, Task, Subtask, Story,
    ExportScope, ApiCallSummary, ExportRecord
)
from .throttle import ThrottleGate, Permit
from .retry import RateLimitState, RetryPolicy
from .asana_client import AsanaClient

__all__ = [
    'ResourceRef',
    'User',
    'Workspace',
    'Project',
    'Task',
    'Subtask',
    'Story',
    'ExportScope',
    'ApiCallSummary',
    'ExportRecord',
    'ThrottleGate',
    'Permit',
    'RateLimitState',
    'RetryPolicy',
    'AsanaClient'
]
