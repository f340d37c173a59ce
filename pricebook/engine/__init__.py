from pricebook.engine.auditor import ChangeAuditor, FieldChange
from pricebook.engine.rates import Conversion, RateApplicationService
from pricebook.engine.resolver import RecordStatus, pick_current, resolve_status
from pricebook.engine.scheduler import UpcomingChange, UpcomingChangeScheduler
from pricebook.engine.store import TemporalRecordStore

__all__ = [
    "ChangeAuditor",
    "Conversion",
    "FieldChange",
    "RateApplicationService",
    "RecordStatus",
    "TemporalRecordStore",
    "UpcomingChange",
    "UpcomingChangeScheduler",
    "pick_current",
    "resolve_status",
]
