"""Dashboard analytics for the storefront ledger.

:func:`compute_metrics` is a pure function of the item list, the sale list,
and a reference time. It performs one pass over the sales to fill the
today/week/month/lifetime buckets, the daily revenue series, and the
best-seller tally, then one pass over the items for the inventory snapshot.

Malformed records never abort the pass: numeric fields go through the data
layer's coercion helpers, unknown items contribute no cost, and sales without
a readable timestamp only count towards the lifetime bucket.

:func:`watch_dashboard` is the glue that re-runs the aggregation whenever the
item or sale feed of a :class:`~storefront_ledger.core_logic.RuntimeContext`
pushes a new snapshot.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from . import core_logic, log
from .constants import BEST_SELLER_LIMIT, LOW_STOCK_RATIO, WEEK_WINDOW_DAYS, PaymentMethod, SaleShape
from .data_manager import ItemRow, SaleRow, to_decimal, to_int


ZERO = Decimal("0")


@dataclass(frozen=True)
class PeriodTotals:
    """Revenue and profit for one time bucket.

    ``pending`` (unpaid revenue) is only tracked for the today and lifetime
    buckets and is ``None`` elsewhere.
    """

    revenue: Decimal = ZERO
    profit: Decimal = ZERO
    pending: Optional[Decimal] = None


@dataclass(frozen=True)
class BestSeller:
    name: str
    quantity: int


@dataclass(frozen=True)
class Metrics:
    """Everything the dashboard renders, computed in one call."""

    today: PeriodTotals
    week: PeriodTotals
    month: PeriodTotals
    lifetime: PeriodTotals
    daily_revenue: tuple[Decimal, ...]
    item_count: int
    stock_value: Decimal
    low_stock_items: tuple[ItemRow, ...]
    out_of_stock_items: tuple[ItemRow, ...]
    best_sellers: tuple[BestSeller, ...]


class _Bucket:
    def __init__(self, track_pending: bool) -> None:
        self.revenue = ZERO
        self.profit = ZERO
        self.pending: Optional[Decimal] = ZERO if track_pending else None

    def add(self, total: Decimal, profit: Decimal, is_unpaid: bool) -> None:
        self.revenue += total
        self.profit += profit
        if self.pending is not None and is_unpaid:
            self.pending += total

    def freeze(self) -> PeriodTotals:
        return PeriodTotals(revenue=self.revenue, profit=self.profit, pending=self.pending)


def effective_total(sale: SaleRow) -> Decimal:
    """Resolve the amount a sale counts for.

    The stored total wins when present and non-zero. Otherwise itemized sales
    sum ``quantity x unit price`` over their lines, and legacy single-item
    sales multiply their flat quantity and unit price.
    """

    stored = to_decimal(sale.total_amount)
    if stored != ZERO:
        return stored
    lines = sale.lines or ()
    if sale.shape is SaleShape.ITEMIZED:
        return sum((to_int(line.quantity) * to_decimal(line.unit_price) for line in lines), ZERO)
    if lines:
        legacy = lines[0]
        return to_int(legacy.quantity) * to_decimal(legacy.unit_price)
    return ZERO


def cost_of_goods(sale: SaleRow, items_by_id: Mapping[str, ItemRow]) -> Decimal:
    """Sum ``cost price x quantity`` over lines whose item still exists."""

    cost = ZERO
    for line in sale.lines or ():
        item = items_by_id.get(line.item_id) if line.item_id else None
        if item is None:
            continue
        cost += to_decimal(item.cost_price) * to_int(line.quantity)
    return cost


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def compute_metrics(
    items: Sequence[ItemRow],
    sales: Sequence[SaleRow],
    now: datetime,
    *,
    low_stock_ratio: Decimal = LOW_STOCK_RATIO,
    best_seller_limit: int = BEST_SELLER_LIMIT,
) -> Metrics:
    """Aggregate dashboard metrics from the current items and sales.

    Unpaid sales count towards revenue and pending but contribute zero profit
    until they are marked as paid. Calendar comparisons (same day, same month)
    happen in ``now``'s timezone; naive datetimes are read as UTC.

    Args:
        items (Sequence[ItemRow]): Current inventory.
        sales (Sequence[SaleRow]): All sales; best-seller ties go to the
            name met first in this order.
        now (datetime): Reference time for the buckets and the daily series.
        low_stock_ratio (Decimal): Share of ``initial_stock`` below which a
            stocked item is reported as low.
        best_seller_limit (int): Number of best sellers to return.

    Returns:
        Metrics: Bucketed totals, daily series, inventory snapshot, low and
            out-of-stock items, and best sellers.
    """

    now = _aware(now)
    week_start = now - timedelta(days=WEEK_WINDOW_DAYS)
    days_in_month = calendar.monthrange(now.year, now.month)[1]

    items_by_id: Dict[str, ItemRow] = {item.item_id: item for item in items}
    today = _Bucket(track_pending=True)
    week = _Bucket(track_pending=False)
    month = _Bucket(track_pending=False)
    lifetime = _Bucket(track_pending=True)
    daily = [ZERO] * days_in_month
    sold_by_name: Dict[str, int] = {}

    for sale in sales:
        total = effective_total(sale)
        is_unpaid = sale.payment_method is PaymentMethod.UNPAID
        profit = ZERO if is_unpaid else total - cost_of_goods(sale, items_by_id)

        lifetime.add(total, profit, is_unpaid)
        if sale.timestamp is not None:
            local = _aware(sale.timestamp).astimezone(now.tzinfo)
            same_month = (local.year, local.month) == (now.year, now.month)
            if local.date() == now.date():
                today.add(total, profit, is_unpaid)
            if local >= week_start:
                week.add(total, profit, is_unpaid)
            if same_month:
                month.add(total, profit, is_unpaid)
                if total > ZERO:
                    daily[local.day - 1] += total

        for line in sale.lines or ():
            name = line.item_name
            sold_by_name[name] = sold_by_name.get(name, 0) + to_int(line.quantity)

    stock_value = sum((to_decimal(item.cost_price) * to_int(item.stock) for item in items), ZERO)
    low_stock: List[ItemRow] = []
    out_of_stock: List[ItemRow] = []
    for item in items:
        stock = to_int(item.stock)
        threshold = max(to_int(item.initial_stock) * low_stock_ratio, ZERO)
        if stock <= 0:
            out_of_stock.append(item)
        elif stock < threshold:
            low_stock.append(item)

    # sorted() is stable, so equal quantities keep first-seen order.
    ranked = sorted(sold_by_name.items(), key=lambda entry: entry[1], reverse=True)
    best_sellers = tuple(
        BestSeller(name=name, quantity=quantity)
        for name, quantity in ranked[:best_seller_limit]
        if quantity > 0
    )

    log.debug(
        "Computed metrics over %d item(s) and %d sale(s): lifetime revenue=%s",
        len(items),
        len(sales),
        lifetime.revenue,
    )
    return Metrics(
        today=today.freeze(),
        week=week.freeze(),
        month=month.freeze(),
        lifetime=lifetime.freeze(),
        daily_revenue=tuple(daily),
        item_count=len(items),
        stock_value=stock_value,
        low_stock_items=tuple(low_stock),
        out_of_stock_items=tuple(out_of_stock),
        best_sellers=best_sellers,
    )


def metrics_for_context(context: core_logic.RuntimeContext, now: datetime) -> Metrics:
    """Run :func:`compute_metrics` over a context using its configured thresholds."""

    return compute_metrics(
        core_logic.list_items(context),
        core_logic.list_sales(context),
        now,
        low_stock_ratio=context.settings.low_stock_ratio,
        best_seller_limit=context.settings.best_seller_limit,
    )


def _local_now() -> datetime:
    return datetime.now().astimezone()


def watch_dashboard(
    context: core_logic.RuntimeContext,
    on_metrics: Callable[[Metrics], None],
    *,
    clock: Callable[[], datetime] = _local_now,
    on_error: Optional[Callable[[Exception], None]] = None,
) -> Callable[[], None]:
    """Recompute metrics on every item or sale snapshot.

    ``on_metrics`` fires once both feeds have delivered their first snapshot
    and again after every later change.

    Returns:
        Callable[[], None]: Detaches both subscriptions.
    """

    latest: Dict[str, Optional[list]] = {"items": None, "sales": None}

    def _refresh() -> None:
        if latest["items"] is None or latest["sales"] is None:
            return
        on_metrics(
            compute_metrics(
                latest["items"],
                latest["sales"],
                clock(),
                low_stock_ratio=context.settings.low_stock_ratio,
                best_seller_limit=context.settings.best_seller_limit,
            )
        )

    def _on_items(snapshot: list) -> None:
        latest["items"] = snapshot
        _refresh()

    def _on_sales(snapshot: list) -> None:
        latest["sales"] = snapshot
        _refresh()

    unsubscribe_items = core_logic.subscribe_items(context, _on_items, on_error)
    unsubscribe_sales = core_logic.subscribe_sales(context, _on_sales, on_error)

    def unsubscribe() -> None:
        unsubscribe_items()
        unsubscribe_sales()

    return unsubscribe
