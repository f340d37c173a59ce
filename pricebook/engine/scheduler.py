"""Read model for versions that have not started yet, plus cancellation.

Nothing is scheduled in the background: a record becomes active simply because
``now`` moved past its ``effective_from``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from pricebook.db.models import ChangeType, PriceRecord, SubjectType
from pricebook.engine.auditor import ChangeAuditor
from pricebook.engine.resolver import countdown, hours_until
from pricebook.engine.store import TemporalRecordStore
from pricebook.utils.helpers import utcnow

DEFAULT_HORIZON = timedelta(hours=168)


@dataclass
class UpcomingChange:
    record: Any
    countdown: timedelta
    hours_until: int

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = self.record.to_dict(now)
        data["countdown_seconds"] = int(self.countdown.total_seconds())
        data["hours_until"] = self.hours_until
        return data


class UpcomingChangeScheduler:
    def __init__(
        self,
        stores: Dict[SubjectType, TemporalRecordStore],
        auditor: ChangeAuditor,
        clock: Callable[[], datetime] = utcnow,
        default_horizon: timedelta = DEFAULT_HORIZON,
    ):
        self.stores = stores
        self.auditor = auditor
        self.clock = clock
        self.default_horizon = default_horizon

    def list_upcoming(
        self,
        horizon: Optional[timedelta] = None,
        subject_type: Optional[SubjectType] = None,
        product_id: Optional[str] = None,
    ) -> List[UpcomingChange]:
        """Records starting within ``(now, now + horizon]``, soonest first.

        ``product_id`` only narrows price records; asking for it implies
        ``subject_type=price``.
        """
        horizon = horizon if horizon is not None else self.default_horizon
        if product_id:
            subject_type = SubjectType.PRICE

        records = []
        for kind, store in self.stores.items():
            if subject_type is not None and kind is not subject_type:
                continue
            criteria = [PriceRecord.product_id == product_id] if product_id else None
            records.extend(store.query_upcoming(horizon=horizon, criteria=criteria))

        now = self.clock()
        records.sort(key=lambda r: (r.effective_from, r.subject_type.value, r.id))
        return [UpcomingChange(r, countdown(r, now), hours_until(r, now)) for r in records]

    def cancel_upcoming(
        self,
        subject_type: SubjectType,
        record_id: int,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        store = self.stores[subject_type]
        record = store.get(record_id)
        before = record.snapshot()
        store.cancel(record_id, actor)
        self.auditor.record_change(
            subject_type,
            record.id,
            ChangeType.DELETE,
            before,
            record.snapshot(),
            actor=actor,
            reason=reason,
        )
        logger.info(f"Cancelled upcoming {subject_type.value} record {record_id} ({record.subject.key})")
        return record
