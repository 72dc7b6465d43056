import pytest
from datetime import date

from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import DatabaseError
from models.base import CheckStatus, CheckType, PeriodType
from pipeline.quality_checker import DataQualityChecker
from pipeline.transformers.nested_transformer import NestedDataTransformer
from schemas.sync import WriteResult

START = date(2024, 1, 1)
END = date(2024, 1, 7)


@pytest.fixture
def checker():
    return DataQualityChecker()


@pytest.fixture
def nest(make_row):
    def _nest(*rows):
        return NestedDataTransformer().group_rows(list(rows), PeriodType.WEEKLY, START, END)
    return _nest


def test_row_count_passes_when_everything_was_written(checker):
    check = checker.check_row_count(expected=10, actual=10)

    assert check.check_type == CheckType.ROW_COUNT
    assert check.check_status == CheckStatus.PASSED
    assert check.difference == 0


def test_row_count_mismatch_is_a_warning(checker):
    check = checker.check_row_count(expected=10, actual=8)

    assert check.check_status == CheckStatus.WARNING
    assert check.difference == 2
    assert check.difference_pct == pytest.approx(20.0)


def test_empty_window_row_count_passes(checker):
    check = checker.check_row_count(expected=0, actual=0)

    assert check.check_status == CheckStatus.PASSED
    assert check.difference_pct == 0.0


def test_share_out_of_bounds_is_a_warning(checker, nest, make_row):
    nested = nest(
        make_row(query="earbuds", asin_click_share=1.4, asin_purchase_share=-0.1),
        make_row(query="headphones"),
    )

    checks = checker.check_share_bounds(nested)

    assert len(checks) == 1
    check = checks[0]
    assert check.check_status == CheckStatus.WARNING
    assert check.metadata["rule"] == "share_bounds"
    assert check.metadata["shares"] == {"asin_click_share": 1.4, "asin_purchase_share": -0.1}


def test_funnel_violation_is_one_failure_per_pair(checker, nest, make_row):
    nested = nest(
        make_row(query="earbuds", impressions=100, clicks=200),
        make_row(query="headphones", cart_adds=1, purchases=5),
        make_row(query="speaker"),
    )

    checks = checker.check_funnel_consistency(nested)

    assert len(checks) == 2
    assert all(c.check_status == CheckStatus.FAILED for c in checks)
    assert [c.metadata["search_query"] for c in checks] == ["earbuds", "headphones"]
    assert checks[0].metadata["counts"]["clicks"] == 200


def test_post_write_checks(checker, nest, make_row):
    nested = nest(make_row(query="earbuds"), make_row(query="headphones", clicks=5000))

    checks = checker.run_post_write_checks(nested, WriteResult(query_records_written=2))

    assert [c.check_type for c in checks] == [CheckType.ROW_COUNT, CheckType.SUM_VALIDATION]
    assert checks[0].check_status == CheckStatus.PASSED
    assert checks[1].check_status == CheckStatus.FAILED


@pytest.mark.asyncio
async def test_store_checks(checker, session_factory, mock_session, make_result):
    mock_session.execute.side_effect = [make_result(scalar=0), make_result(scalar=3)]

    checks = await checker.run_store_checks(session_factory, PeriodType.WEEKLY, START, END)

    null_check, duplicate_check = checks
    assert null_check.check_type == CheckType.NULL_CHECK
    assert null_check.check_status == CheckStatus.PASSED
    assert duplicate_check.check_type == CheckType.DUPLICATE_CHECK
    assert duplicate_check.check_status == CheckStatus.FAILED
    assert duplicate_check.target_value == 3
    assert duplicate_check.column_name == "period_start,query,asin"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    SQLAlchemyError("relation does not exist"),
    ConnectionRefusedError(111, "Connect call failed"),
])
async def test_store_checks_wrap_store_errors(checker, session_factory, mock_session, error):
    mock_session.execute.side_effect = error

    with pytest.raises(DatabaseError):
        await checker.run_store_checks(session_factory, PeriodType.WEEKLY, START, END)
