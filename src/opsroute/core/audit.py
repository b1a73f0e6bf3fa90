"""In-memory dispatch audit trail that forwards every change to audit sinks."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Iterable, List, Optional

from opsroute.core.models import DispatchRecord
from opsroute.core.ports import AuditPort

LOGGER = logging.getLogger(__name__)


class DispatchLog:
    """Latest state of the most recently touched dispatch records.

    At most ``retain`` records are kept; the least recently updated one is
    dropped first. Sinks receive every change regardless.
    """

    def __init__(self, sinks: Iterable[AuditPort] = (), retain: int = 2048) -> None:
        self._records: "OrderedDict[str, DispatchRecord]" = OrderedDict()
        self._sinks: List[AuditPort] = list(sinks)
        self._retain = max(retain, 1)

    def save(self, record: DispatchRecord) -> DispatchRecord:
        self._records[record.record_id] = record
        self._records.move_to_end(record.record_id)
        while len(self._records) > self._retain:
            self._records.popitem(last=False)
        for sink in self._sinks:
            try:
                sink.save_dispatch_record(record)
            except Exception:
                # The in-memory trail stays authoritative for the running engine.
                LOGGER.exception("Failed to persist dispatch record %s", record.record_id)
        return record

    def get(self, record_id: str) -> Optional[DispatchRecord]:
        return self._records.get(record_id)

    def __len__(self) -> int:
        return len(self._records)

    def history(self, message_id: Optional[str] = None) -> List[DispatchRecord]:
        return [
            record
            for record in self._records.values()
            if message_id is None or record.message_id == message_id
        ]
