"""
sync.py - Push bugs from the Bugs sheet to Trello and record the outcome.

An open bug whose push fails is left in "Pendiente sincronización Trello" so
it can be found and retried later; closed bugs keep their state and deleted
bugs are never pushed. A successful push stores TrelloCardID and TrelloCardURL
and returns a pending bug to "Abierto".

The HTTP call runs outside the store lock; only the read of the bug and the
write of the outcome hold it.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

from .bug_sheet import (
    STATE_OPEN,
    STATE_PENDING_SYNC,
    UNRESOLVED_STATES,
    all_bug_records,
    bug_record,
    bugs_sheet,
    find_bug,
    is_deleted,
)
from .config_store import ConfigStore
from .headers import get_cell_by_logical, set_cell_by_logical
from .logger import get_logger
from .results import ErrorCode, PreconditionError, QAError, Result, result_boundary
from .trello_api import TrelloCardResult, TrelloClient, TrelloConfig
from .workbook import WorkbookStore, cell_text


logger = get_logger(__name__)

ClientFactory = Callable[[TrelloConfig], TrelloClient]


class TrackerSync:
    def __init__(
        self,
        store: WorkbookStore,
        config: ConfigStore,
        settings: Optional[Dict[str, Any]] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.store = store
        self.config = config
        self.settings = settings or {}
        self._client_factory = client_factory or self._default_client

    def _default_client(self, cfg: TrelloConfig) -> TrelloClient:
        t = self.settings.get("trello") or {}
        return TrelloClient(
            cfg,
            api_base=t.get("api_base") or "https://api.trello.com/1",
            timeout=float(t.get("timeout", 10.0)),
            label_delay=float(t.get("label_delay", 0.1)),
        )

    # ------------------------------------------------------------------ core

    def push(self, bug_id: str) -> Tuple[TrelloCardResult, str]:
        """
        Create the card for one bug and write the outcome back.

        Returns the tracker result and the bug state after the push. Only an
        unresolved bug is moved to the pending state on failure; a closed bug
        keeps its state. Raises NotFoundError, or PreconditionError for a
        soft-deleted bug.
        """
        with self.store.reading():
            record = bug_record(find_bug(self.store, bug_id))
        if is_deleted(record):
            raise PreconditionError(
                f"El bug {bug_id} está eliminado y no se sincroniza con Trello",
                details={"bug_id": bug_id},
            )

        client = self._client_factory(self.config.get_trello_config())
        card = client.create_card(record)

        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            loc = find_bug(self.store, bug_id, sheet)
            state = cell_text(get_cell_by_logical(loc.headers, loc.values, "Estado"))
            if card.success:
                set_cell_by_logical(sheet, loc.row, loc.headers, "TrelloCardID", card.card_id)
                set_cell_by_logical(sheet, loc.row, loc.headers, "TrelloCardURL", card.card_url)
                if state == STATE_PENDING_SYNC:
                    state = STATE_OPEN
                    set_cell_by_logical(sheet, loc.row, loc.headers, "Estado", state)
            elif state in UNRESOLVED_STATES or not state:
                state = STATE_PENDING_SYNC
                set_cell_by_logical(sheet, loc.row, loc.headers, "Estado", state)

        if card.success:
            logger.info("Bug %s synced to Trello: %s", bug_id, card.card_url)
        else:
            logger.warning("Trello push for bug %s failed (state %s): %s", bug_id, state, card.error)
        return card, state

    def _card_result(self, bug_id: str, card: TrelloCardResult, state: str) -> Result:
        data = {"bug_id": bug_id, "estado": state, "trello": card.to_dict()}
        if card.success:
            return Result.ok("Bug sincronizado con Trello", data, warnings=card.warnings)
        return Result.fail(
            f"No se pudo sincronizar con Trello: {card.error}",
            card.error_code or ErrorCode.TRACKER_ERROR,
            data,
        )

    # ------------------------------------------------------------------ public operations

    @result_boundary("sincronizar bug con Trello")
    def push_bug(self, bug_id: str) -> Result:
        card, state = self.push(bug_id)
        return self._card_result(bug_id, card, state)

    @result_boundary("reintentar sincronización")
    def retry_sync(self, bug_id: str) -> Result:
        with self.store.reading():
            record = bug_record(find_bug(self.store, bug_id))
        url = cell_text(record.get("TrelloCardURL"))
        if url:
            return Result.fail(
                "El bug ya está sincronizado con Trello",
                ErrorCode.ALREADY_SYNCED,
                {"bug_id": bug_id, "trello_url": url},
            )
        card, state = self.push(bug_id)
        return self._card_result(bug_id, card, state)

    @result_boundary("reintentar bugs pendientes")
    def retry_pending(self) -> Result:
        with self.store.reading():
            pending = [
                cell_text(b.get("ID"))
                for b in all_bug_records(self.store)
                if cell_text(b.get("Estado")) == STATE_PENDING_SYNC
                and not is_deleted(b)
                and not cell_text(b.get("TrelloCardURL"))
            ]

        synced: List[str] = []
        failed: List[Dict[str, Any]] = []
        for bug_id in pending:
            try:
                card, _ = self.push(bug_id)
            except QAError as e:
                failed.append({"bug_id": bug_id, "error": e.message, "codigo": e.code.value})
                continue
            if card.success:
                synced.append(bug_id)
            else:
                failed.append({"bug_id": bug_id, "error": card.error, "codigo": card.error_code})

        data = {"sincronizados": synced, "fallidos": failed, "total": len(pending)}
        if failed:
            return Result.fail(
                f"{len(failed)} de {len(pending)} bug(s) siguen pendientes de sincronización",
                ErrorCode.PARTIAL_FAILURE,
                data,
            )
        return Result.ok(f"{len(synced)} bug(s) sincronizados", data)
