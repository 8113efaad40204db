"""
context.py - Wire the services for one workbook.

    ctx = open_context("qa.xlsx")
    ctx.bugs.create({"titulo": "Login fails"})
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .bugs import BugRepository
from .cases import CaseQueries
from .config_store import ConfigStore
from .crossref import CrossReference
from .execution import ExecutionUpdater
from .logger import get_logger
from .settings import load_settings
from .sync import ClientFactory, TrackerSync
from .workbook import WorkbookStore


logger = get_logger(__name__)


@dataclass
class QAContext:
    settings: Dict[str, Any]
    store: WorkbookStore
    config: ConfigStore
    crossref: CrossReference
    execution: ExecutionUpdater
    sync: TrackerSync
    bugs: BugRepository
    cases: CaseQueries


def open_context(
    path: str | Path | None,
    settings: Optional[Dict[str, Any]] = None,
    client_factory: Optional[ClientFactory] = None,
) -> QAContext:
    """Open (or create) a workbook and build every service on top of it."""
    if settings is None:
        settings = load_settings()
    wb_settings = settings.get("workbook") or {}
    store = WorkbookStore.open(
        path,
        reserved_sheets=wb_settings.get("reserved_sheets"),
        deep_link_base=wb_settings.get("deep_link_base") or "",
    )
    config = ConfigStore(store, evidence_root=(settings.get("evidence") or {}).get("root_dir", ""))
    crossref = CrossReference(store)
    execution = ExecutionUpdater(store, settings, config)
    sync = TrackerSync(store, config, settings, client_factory)
    bugs = BugRepository(store, config, crossref, execution, settings, sync)
    logger.info("QA context ready for %s", path if path is not None else "<in-memory workbook>")
    return QAContext(
        settings=settings,
        store=store,
        config=config,
        crossref=crossref,
        execution=execution,
        sync=sync,
        bugs=bugs,
        cases=CaseQueries(store),
    )
