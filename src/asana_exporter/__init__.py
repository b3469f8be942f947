"""
Asana エクスポーター

Asana のユーザー・ワークスペース・プロジェクト・タスク・サブタスク・コメントを
レート制限を守りながら一括取得する
"""

from .business.export_orchestrator import ExportOrchestrator, export_asana_data
from .data.models import ExportRecord, ExportScope

__version__ = "1.0.0"

__all__ = ['ExportOrchestrator', 'export_asana_data', 'ExportRecord', 'ExportScope', '__version__']
