from datetime import date, datetime

import pytest

from errors import FieldValidationError, PaymentExceedsRemainingError
from finance import check_payment, rental_days, rental_total, summarize


def test_same_day_is_billed_one_day():
    assert rental_total(date(2024, 5, 1), date(2024, 5, 1), 250) == 250


def test_same_day_with_hours_is_one_day():
    start = datetime(2024, 5, 1, 8, 0)
    end = datetime(2024, 5, 1, 20, 0)
    assert rental_days(start, end) == 1


def test_total_is_calendar_days_times_price():
    assert rental_total(date(2024, 5, 1), date(2024, 5, 4), 250) == 750


def test_calendar_days_ignore_hours():
    # 23h -> 1h del día siguiente cuenta como un día
    assert rental_days(datetime(2024, 5, 1, 23), datetime(2024, 5, 2, 1)) == 1
    assert rental_days(datetime(2024, 5, 1, 8), datetime(2024, 5, 3, 20)) == 2


def test_reversed_dates_clamp_to_one_day():
    assert rental_days(date(2024, 5, 4), date(2024, 5, 1)) == 1
    assert rental_total(date(2024, 5, 4), date(2024, 5, 1), 300) == 300


def test_fallback_to_stored_total_when_dates_missing():
    assert rental_total(None, None, 250, montant_total=900) == 900


def test_fallback_to_stored_day_count():
    assert rental_total(None, date(2024, 5, 4), 250, montant_total=0, nbr_jours=4) == 1000


def test_fallback_to_zero():
    assert rental_total(None, None, 0) == 0.0


@pytest.mark.parametrize("price", [None, -10, True])
def test_invalid_price_is_rejected(price):
    with pytest.raises(ValueError):
        rental_total(date(2024, 5, 1), date(2024, 5, 2), price)


def test_summary_rounds_amounts():
    summary = summarize(750, 333.333)
    assert summary.paye == 333.33
    assert summary.reste == 416.67


def test_payments_accumulate_up_to_total():
    paid = 0.0
    for amount in (200, 300, 250):
        paid = check_payment(750, paid, amount)
    assert paid == 750


def test_payment_above_remaining_cites_remaining():
    with pytest.raises(PaymentExceedsRemainingError) as info:
        check_payment(750, 0, 800)
    assert info.value.remaining == 750
    assert info.value.field == "amount"
    assert "750.00" in info.value.message


def test_payment_on_settled_rental_is_rejected():
    with pytest.raises(PaymentExceedsRemainingError) as info:
        check_payment(750, 750, 1)
    assert info.value.remaining == 0


def test_non_positive_payment_is_rejected():
    with pytest.raises(FieldValidationError):
        check_payment(750, 0, 0)


def test_zero_price_keeps_stored_total():
    assert rental_total(date(2024, 5, 1), date(2024, 5, 4), 0, montant_total=900) == 900
