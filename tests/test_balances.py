from datetime import date, timedelta
from decimal import Decimal

from balances import BalanceBuilder
from dates import DateRange
from schemas import Card, InvoiceAdjustment, Transaction


VISA = Card(name="Visa", closing_day=10, due_day=20)


def _txn(id: str, day: str, amount: str, method: str = "Cash", **extra) -> Transaction:
    return Transaction(
        id=id,
        description=id,
        amount=Decimal(amount),
        method=method,
        operation_date=day,
        **extra,
    )


def _builder(today: date = date(2025, 1, 1), cards=(VISA,)) -> BalanceBuilder:
    return BalanceBuilder(cards, lookback_days=60, today=today)


def test_start_balance_and_cash_expense():
    balances = _builder().build([_txn("a", "2025-01-05", "-100")], Decimal("1000"))

    assert balances.start == date(2025, 1, 1)
    assert balances.end == date(2025, 12, 31)
    assert balances["2025-01-04"] == Decimal("1000")
    assert balances["2025-01-05"] == Decimal("900")
    assert balances.balance_on("2025-06-01") == Decimal("900")


def test_card_purchase_hits_balance_on_due_date():
    purchase = _txn("v", "2025-03-12", "-50", method="Visa")

    balances = _builder().build([purchase], Decimal("0"))

    assert balances["2025-03-31"] == Decimal("0")
    assert balances["2025-04-19"] == Decimal("0")
    assert balances["2025-04-20"] == Decimal("-50")


def test_build_is_deterministic():
    transactions = [
        _txn("a", "2025-01-05", "-100"),
        _txn("b", "2025-02-14", "-40", method="Visa"),
        _txn("m", "2025-01-03", "-15", method="Visa", recurrence_rule="monthly"),
        _txn("s", "2025-01-01", "2500", recurrence_rule="monthly"),
    ]
    builder = _builder()
    assert builder.build(transactions, Decimal("100")) == builder.build(
        transactions, Decimal("100")
    )


def test_day_over_day_delta_matches_daily_impacts():
    transactions = [
        _txn("a", "2025-01-05", "-100"),
        _txn("b", "2025-02-14", "-40", method="Visa"),
        _txn("c", "2025-02-02", "-25", method="Visa"),
        _txn("m", "2025-01-03", "-15", method="Visa", recurrence_rule="monthly"),
        _txn("s", "2025-01-01", "2500", recurrence_rule="monthly"),
    ]
    builder = _builder()
    balances = builder.build(transactions, Decimal("0"))
    impacts = builder.daily_impacts(transactions, DateRange(balances.start, balances.end))

    days = list(balances)
    for previous, current in zip(days, days[1:]):
        assert balances[current] - balances[previous] == impacts[current].total


def test_recurring_card_invoice_reached_from_previous_year():
    # December purchases after the closing day are paid in January.
    master = _txn("m", "2024-12-15", "-30", method="Visa", recurrence_rule="monthly")

    balances = _builder(today=date(2025, 1, 1)).build(
        [master], Decimal("0"), start="2025-01-01", end="2025-01-31"
    )

    assert balances["2025-01-19"] == Decimal("0")
    assert balances["2025-01-20"] == Decimal("-30")


def test_open_card_series_extends_range_past_year_end():
    master = _txn("m", "2025-01-15", "-30", method="Visa", recurrence_rule="monthly")
    balances = _builder().build([master], Decimal("0"))
    assert balances.end == date(2026, 1, 20)


def test_anchor_resets_balance():
    transactions = [
        _txn("a", "2025-01-05", "-100"),
        _txn("b", "2025-01-10", "-50"),
        _txn("c", "2025-01-12", "-20"),
    ]

    balances = _builder().build(transactions, Decimal("500"), anchor="2025-01-10")

    assert balances["2025-01-09"] == Decimal("0")
    assert balances["2025-01-10"] == Decimal("450")
    assert balances["2025-01-12"] == Decimal("430")


def test_anchor_before_range_seeds_first_day():
    balances = _builder().build(
        [_txn("a", "2025-01-05", "-100")], Decimal("300"), anchor="2024-06-01"
    )
    assert balances["2025-01-01"] == Decimal("300")
    assert balances["2025-01-05"] == Decimal("200")


def test_adjustments_settle_part_of_an_invoice():
    purchase = _txn("v", "2025-03-12", "-50", method="Visa")
    adjustment = InvoiceAdjustment(card="Visa", due_date=date(2025, 4, 20), amount=Decimal("20"))

    balances = _builder().build([purchase], Decimal("0"), adjustments=[adjustment])

    assert balances["2025-04-20"] == Decimal("-30")


def test_adjustment_for_unknown_card_is_ignored():
    adjustment = InvoiceAdjustment(card="Amex", due_date=date(2025, 4, 20), amount=Decimal("20"))
    balances = _builder().build([], Decimal("0"), adjustments=[adjustment])
    assert balances["2025-04-20"] == Decimal("0")


def test_unknown_card_is_treated_as_cash():
    balances = _builder().build([_txn("x", "2025-03-12", "-50", method="Amex")], Decimal("0"))
    assert balances["2025-03-12"] == Decimal("-50")


def test_available_only_skips_planned():
    transactions = [
        _txn("a", "2025-01-05", "-100"),
        _txn("b", "2025-01-06", "-40", planned=True),
    ]
    builder = _builder()

    projected = builder.build(transactions, Decimal("0"))
    available = builder.build(transactions, Decimal("0"), available_only=True)

    assert projected["2025-01-06"] == Decimal("-140")
    assert available["2025-01-06"] == Decimal("-100")


def test_derived_queries():
    transactions = [
        _txn("a", "2025-01-05", "-100"),
        _txn("b", "2025-01-20", "200"),
    ]
    balances = _builder().build(transactions, Decimal("50"))

    negatives = balances.negative_dates()
    assert negatives[0] == (date(2025, 1, 5), Decimal("-50"))
    assert len(negatives) == 15

    projection = balances.project(3, date(2025, 1, 4))
    assert [p.balance for p in projection] == [
        Decimal("50"),
        Decimal("-50"),
        Decimal("-50"),
        Decimal("-50"),
    ]
    assert projection[0].is_today and projection[1].is_future

    stats = balances.stats(date(2025, 1, 7))
    assert stats.minimum == Decimal("-50")
    assert stats.maximum == Decimal("150")
    assert stats.current == Decimal("-50")
    assert stats.trend == "down"
    assert stats.negative_days == 15


def test_balance_outside_range():
    balances = _builder().build([], Decimal("10"), start="2025-01-01", end="2025-01-31")
    assert balances.balance_on("2024-12-31") == Decimal("0")
    assert balances.balance_on("2025-02-15") == Decimal("10")
    assert len(balances) == 31
    assert balances.start + timedelta(days=30) == balances.end
