import logging

from core.exceptions import WarehouseQueryError
from core.logging import ErrorContextFormatter, setup_logging


def record(**extra):
    rec = logging.LogRecord("pipeline.scheduler", logging.ERROR, __file__, 1, "Sync failed", None, None)
    rec.__dict__.update(extra)
    return rec


def test_error_context_is_appended():
    error = WarehouseQueryError("Warehouse rejected the query", context={"period_type": "weekly"})
    line = ErrorContextFormatter("%(levelname)s %(message)s").format(record(error_context=error.to_dict()))

    assert line.startswith("ERROR Sync failed | context=")
    assert '"error_type": "WarehouseQueryError"' in line
    assert '"period_type": "weekly"' in line


def test_plain_records_are_unchanged():
    assert ErrorContextFormatter("%(message)s").format(record()) == "Sync failed"


def test_setup_logging_adds_one_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        setup_logging("DEBUG")
        setup_logging("WARNING")

        added = [h for h in root.handlers if h not in before]
        assert len(added) <= 1
        assert root.level == logging.WARNING
        assert logging.getLogger("apscheduler").level == logging.WARNING
    finally:
        for handler in [h for h in root.handlers if h not in before]:
            root.removeHandler(handler)
