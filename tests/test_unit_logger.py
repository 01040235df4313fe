import json
import logging
from decimal import Decimal

from accrual_engine.models.db.enums import OutboxStatus
from accrual_engine.utils.logger import JSONFormatter, get_logger


def test_loggers_live_under_package_hierarchy():
    assert get_logger("jobs.worker").logger.name == "accrual_engine.jobs.worker"
    assert get_logger("accrual_engine.services.x").logger.name == "accrual_engine.services.x"


class _Collect(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_bound_context_reaches_record():
    handler = _Collect()
    log = get_logger("tests.bind").bind(date="2025-03-10", trigger="MANUAL")
    log.logger.addHandler(handler)
    log.logger.setLevel(logging.INFO)
    try:
        log.info("Accrual date completed", processed=3, skipped=None)
    finally:
        log.logger.removeHandler(handler)
    assert handler.records[-1].context == {"date": "2025-03-10", "trigger": "MANUAL", "processed": 3}


def test_json_formatter_keeps_money_exact():
    record = logging.LogRecord("accrual_engine.t", logging.INFO, __file__, 1, "paid", None, None)
    record.context = {"amount": Decimal("125.00000000"), "status": OutboxStatus.PUBLISHED}
    line = json.loads(JSONFormatter().format(record))
    assert line["amount"] == "125.00000000"
    assert line["status"] == "PUBLISHED"
    assert line["message"] == "paid"
