"""
Plugin output repository (metrics and run history).
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session as DbSession

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import PluginMetric, PluginRun


class PluginRepository(BaseRepository[PluginMetric]):
    """Repository for PluginMetric and PluginRun models."""

    def __init__(self, session: DbSession):
        super().__init__(PluginMetric, session)

    def delete_metric(self, session_id: str, plugin_name: str, metric_name: str) -> int:
        return (
            self.session.query(PluginMetric)
            .filter(
                PluginMetric.session_id == session_id,
                PluginMetric.plugin_name == plugin_name,
                PluginMetric.metric_name == metric_name,
            )
            .delete(synchronize_session=False)
        )

    def delete_for_plugin(self, session_id: str, plugin_name: str) -> int:
        return (
            self.session.query(PluginMetric)
            .filter(
                PluginMetric.session_id == session_id,
                PluginMetric.plugin_name == plugin_name,
            )
            .delete(synchronize_session=False)
        )

    def add_metrics(self, rows: List[dict[str, Any]]) -> int:
        for values in rows:
            self.session.add(PluginMetric(**values))
        self.session.flush()
        return len(rows)

    def get_metrics(
        self,
        session_id: Optional[str] = None,
        plugin_name: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[PluginMetric]:
        query = self.session.query(PluginMetric)
        if session_id is not None:
            query = query.filter(PluginMetric.session_id == session_id)
        if plugin_name is not None:
            query = query.filter(PluginMetric.plugin_name == plugin_name)
        if entity_type is not None:
            query = query.filter(PluginMetric.entity_type == entity_type)
        if entity_id is not None:
            query = query.filter(PluginMetric.entity_id == entity_id)
        return query.order_by(
            PluginMetric.plugin_name.asc(), PluginMetric.metric_name.asc()
        ).all()

    def latest_computed(
        self, session_id: str, plugin_name: str
    ) -> tuple[Optional[datetime], Optional[int]]:
        """Newest ``computed_at`` and lowest ``metric_version`` for a plugin's rows."""
        computed_at, metric_version = (
            self.session.query(
                func.max(PluginMetric.computed_at),
                func.min(PluginMetric.metric_version),
            )
            .filter(
                PluginMetric.session_id == session_id,
                PluginMetric.plugin_name == plugin_name,
            )
            .one()
        )
        return computed_at, metric_version

    def add_run(self, **kwargs) -> PluginRun:
        run = PluginRun(**kwargs)
        self.session.add(run)
        self.session.flush()
        return run

    def get_runs(
        self,
        plugin_name: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PluginRun]:
        query = self.session.query(PluginRun)
        if plugin_name is not None:
            query = query.filter(PluginRun.plugin_name == plugin_name)
        if session_id is not None:
            query = query.filter(PluginRun.session_id == session_id)
        query = query.order_by(PluginRun.id.desc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()
