from datetime import datetime

import pytest

from library_fines.services.fine_engine import MODE_ADVANCED, MODE_SIMPLE
from library_fines.services.fine_selector import FineContext

WEEKDAY = datetime(2024, 1, 9, 12, 0)
SATURDAY = datetime(2024, 1, 6, 12, 0)


@pytest.fixture
def selector(services):
    return services.selector


@pytest.fixture
def overdue_borrow(make_user, make_borrow):
    user = make_user(email='plain@example.com')
    return make_borrow(user, datetime(2024, 1, 1), return_date=datetime(2024, 1, 5))


def test_admin_and_report_contexts_force_advanced(selector, overdue_borrow):
    assert selector.select_mode(FineContext(is_admin=True, is_bulk=True)) == MODE_ADVANCED
    assert selector.select_mode(FineContext(is_report=True)) == MODE_ADVANCED


def test_bulk_context_prefers_simple_unless_forced(selector):
    assert selector.select_mode(FineContext(is_bulk=True)) == MODE_SIMPLE
    assert selector.select_mode(FineContext(is_bulk=True, force_mode=MODE_ADVANCED)) == MODE_ADVANCED


def test_plain_user_on_weekday_gets_simple(selector, overdue_borrow):
    result = selector.calculate_smart(FineContext(borrow_id=overdue_borrow.id, now=WEEKDAY))

    assert result.mode == MODE_SIMPLE
    assert result.total_fine == 1.50


def test_special_classification_biases_toward_advanced(selector, make_user, make_borrow):
    user = make_user(email='kim@college.edu')
    borrow = make_borrow(user, datetime(2024, 1, 1), return_date=datetime(2024, 1, 5))

    assert selector.complexity_score(user.id, WEEKDAY) == 2
    result = selector.calculate_smart(FineContext(record=borrow, now=WEEKDAY))
    assert result.mode == MODE_ADVANCED


def test_outstanding_fines_and_weekend_add_up(selector, make_user, make_borrow):
    user = make_user(email='plain@example.com')
    make_borrow(user, datetime(2024, 1, 1), return_date=datetime(2024, 1, 5))
    user_id = user.id
    assert selector.complexity_score(user_id, WEEKDAY) == 0
    assert selector.complexity_score(user_id, SATURDAY) == 1

    make_borrow(user, datetime(2024, 1, 2), fine=3.0)
    assert selector.complexity_score(user_id, SATURDAY) == 2
    assert selector.select_mode(FineContext(user_id=user_id, now=SATURDAY)) == MODE_ADVANCED


def test_unknown_borrow_gives_zero_result(selector):
    result = selector.calculate_smart(FineContext(borrow_id='missing'))

    assert result.total_fine == 0


def test_bulk_calculate_in_parallel(selector, make_user, make_borrow):
    user = make_user()
    ids = [
        make_borrow(user, datetime(2024, 1, 1), return_date=datetime(2024, 1, 11)).id,
        make_borrow(user, datetime(2024, 1, 1), return_date=datetime(2024, 1, 2)).id,
        'missing',
    ]

    summary = selector.bulk_calculate(ids, batch_size=10, parallel=True)

    assert summary['parallel'] is True
    assert summary['total'] == 3
    assert summary['successful'] == 3
    assert summary['failed'] == 0
    assert summary['total_fines'] == 4.50
    assert {item['borrow_id'] for item in summary['results']} == set(ids)
    assert all(item['result']['mode'] == MODE_SIMPLE for item in summary['results'][:2])
    assert summary['duration_ms'] >= 0


def test_bulk_calculate_large_batch_runs_sequentially(selector, make_user, make_borrow):
    user = make_user()
    ids = [make_borrow(user, datetime(2024, 1, 1)).id for _ in range(3)]

    summary = selector.bulk_calculate(ids, batch_size=2, parallel=True)

    assert summary['parallel'] is False
    assert summary['successful'] == 3


def test_bulk_calculate_collects_failures(selector, make_user, make_borrow, mocker):
    user = make_user()
    ids = [make_borrow(user, datetime(2024, 1, 1)).id for _ in range(2)]
    mocker.patch.object(selector.engine.simple, 'calculate', side_effect=RuntimeError('boom'))

    summary = selector.bulk_calculate(ids, parallel=False)

    assert summary['successful'] == 0
    assert summary['failed'] == 2
    assert summary['results'][0] == {'borrow_id': ids[0], 'success': False, 'error': 'boom'}
