"""Integration tests describing the end-to-end storefront workflows.

These scenarios run the business logic layer against a real workbook created
by the setup helper, persisting and reloading where the production CLI would.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from storefront_ledger import analytics, cli, constants, core_logic, data_manager, receipts

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


def _add_item(context: core_logic.RuntimeContext, name: str, *, price: str, cost: str, stock: int, item_id: str | None = None):
    return core_logic.add_item(
        context,
        core_logic.AddItemCommand(
            name=name,
            selling_price=Decimal(price),
            cost_price=Decimal(cost),
            stock=stock,
            item_id=item_id,
        ),
    )


def _sell(context, quantities, *, payment_method=constants.PaymentMethod.PAID, timestamp=NOW, **buyer):
    lines = core_logic.build_cart(context, quantities)
    return core_logic.record_sale(
        context,
        core_logic.RecordSaleCommand(lines=lines, payment_method=payment_method, timestamp=timestamp, **buyer),
    )


def test_single_item_sale_flow(runtime_context):
    """Sell three pens and check the stored sale, the stock, and the dashboard."""

    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=50)

    sale = _sell(context, {pen.item_id: 3})
    assert sale.total_amount == Decimal("30")

    # Persist and reload so the figures come from disk.
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert core_logic.get_item(context, pen.item_id).stock == 47
    stored = core_logic.get_sale(context, sale.sale_id)
    assert stored.total_amount == Decimal("30")
    assert stored.timestamp == NOW
    assert [(line.item_name, line.quantity) for line in stored.lines] == [("Pen", 3)]

    metrics = analytics.metrics_for_context(context, NOW)
    assert metrics.today.revenue == Decimal("30")
    assert metrics.today.profit == Decimal("18")
    assert metrics.lifetime.revenue == Decimal("30")
    assert metrics.low_stock_items == ()


def test_multi_item_sale_total_matches_lines(runtime_context):
    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=50)
    ink = _add_item(context, "Ink", price="2.50", cost="1", stock=10)

    sale = _sell(context, {pen.item_id: 2, ink.item_id: 4})

    assert sale.total_amount == sum(line.quantity * line.unit_price for line in sale.lines)
    assert sale.total_amount == Decimal("30")
    assert core_logic.get_item(context, ink.item_id).stock == 6


def test_failed_batch_leaves_no_trace(runtime_context, monkeypatch):
    """A store failure midway through the batch must not change stock or sales."""

    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=50)
    ink = _add_item(context, "Ink", price="5", cost="2", stock=10)
    cart = core_logic.build_cart(context, {pen.item_id: 3, ink.item_id: 2})
    original_apply = data_manager._apply_stock_delta
    calls = []

    def flaky_apply(sheet, row_index, column, delta):
        calls.append(delta)
        if len(calls) == 2:
            raise OSError("write failed")
        original_apply(sheet, row_index, column, delta)

    monkeypatch.setattr(data_manager, "_apply_stock_delta", flaky_apply)

    with pytest.raises(data_manager.AtomicWriteError):
        core_logic.record_sale(
            context,
            core_logic.RecordSaleCommand(lines=cart, payment_method=constants.PaymentMethod.PAID, timestamp=NOW),
        )

    stock = {item.item_id: item.stock for item in data_manager.iter_items(context.workbook)}
    assert stock == {pen.item_id: 50, ink.item_id: 10}
    assert list(data_manager.iter_sales(context.workbook)) == []


def test_sale_for_deleted_item_is_rejected_atomically(runtime_context):
    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=50)
    ghost = _add_item(context, "Ghost", price="1", cost="1", stock=5)
    cart = core_logic.build_cart(context, {pen.item_id: 1, ghost.item_id: 1})
    core_logic.delete_item(context, ghost.item_id)

    with pytest.raises(data_manager.AtomicWriteError):
        core_logic.record_sale(
            context,
            core_logic.RecordSaleCommand(lines=cart, payment_method=constants.PaymentMethod.PAID),
        )

    assert core_logic.get_item(context, pen.item_id).stock == 50
    assert core_logic.list_sales(context) == []


def test_stale_cart_can_oversell(runtime_context):
    """Two carts built from the same stock view both commit; stock goes negative."""

    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=2)
    first_cart = core_logic.build_cart(context, {pen.item_id: 2})
    second_cart = core_logic.build_cart(context, {pen.item_id: 2})

    for cart in (first_cart, second_cart):
        core_logic.record_sale(
            context,
            core_logic.RecordSaleCommand(lines=cart, payment_method=constants.PaymentMethod.PAID, timestamp=NOW),
        )

    assert core_logic.get_item(context, pen.item_id).stock == -2
    metrics = analytics.metrics_for_context(context, NOW)
    assert [item.name for item in metrics.out_of_stock_items] == ["Pen"]

    with pytest.raises(core_logic.InsufficientStockError):
        core_logic.build_cart(context, {pen.item_id: 1})


def test_unpaid_sale_settlement_flow(runtime_context):
    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=50)
    sale = _sell(context, {pen.item_id: 3}, payment_method=constants.PaymentMethod.UNPAID)

    before = analytics.metrics_for_context(context, NOW)
    assert before.today.pending == Decimal("30")
    assert before.today.profit == Decimal("0")

    core_logic.mark_sale_paid(context, sale.sale_id)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    after = analytics.metrics_for_context(context, NOW)
    assert core_logic.get_sale(context, sale.sale_id).payment_method is constants.PaymentMethod.PAID
    assert after.today.pending == Decimal("0")
    assert after.today.profit == Decimal("18")

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.mark_sale_paid(context, sale.sale_id)


def test_low_stock_threshold_flow(runtime_context):
    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=100)

    _sell(context, {pen.item_id: 90})
    assert analytics.metrics_for_context(context, NOW).low_stock_items == ()

    _sell(context, {pen.item_id: 1})
    (low,) = analytics.metrics_for_context(context, NOW).low_stock_items
    assert low.item_id == pen.item_id
    assert low.stock == 9

    _sell(context, {pen.item_id: 9})
    metrics = analytics.metrics_for_context(context, NOW)
    assert metrics.low_stock_items == ()
    assert [item.item_id for item in metrics.out_of_stock_items] == [pen.item_id]


def test_import_legacy_documents_flow(runtime_context):
    """Imported legacy sales keep their shape and count through fallback totals."""

    context = runtime_context
    counts = core_logic.import_documents(
        context,
        items=[{"id": "I-PEN", "name": "Pen", "sellingPrice": 10, "purchasePrice": 4, "stock": 40}],
        sales=[
            {
                "id": "S-OLD",
                "itemId": "I-PEN",
                "itemName": "Pen",
                "quantity": 2,
                "unitPrice": 10,
                "paymentMethod": "cash",
                "timestamp": (NOW - timedelta(days=40)).isoformat(),
            },
            {
                "id": "S-NEW",
                "items": [{"itemId": "I-PEN", "itemName": "Pen", "quantity": 1, "unitPrice": 10}],
                "totalAmount": 0,
                "paymentMethod": {"paymentMethod": "pending"},
                "timestamp": {"_seconds": NOW.timestamp()},
            },
        ],
    )
    assert counts == {"items": 1, "sales": 2}

    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    legacy = core_logic.get_sale(context, "S-OLD")
    assert legacy.shape is constants.SaleShape.LEGACY_SINGLE
    assert legacy.payment_method is constants.PaymentMethod.PAID
    assert core_logic.get_item(context, "I-PEN").stock == 40

    metrics = analytics.metrics_for_context(context, NOW)
    assert metrics.lifetime.revenue == Decimal("30")
    assert metrics.lifetime.pending == Decimal("10")
    assert metrics.today.revenue == Decimal("10")
    assert metrics.best_sellers == (analytics.BestSeller(name="Pen", quantity=3),)

    again = core_logic.import_documents(context, sales=[{"id": "S-OLD"}])
    assert again == {"items": 0, "sales": 0}


def test_owners_are_isolated(config_factory):
    bundle = config_factory()
    first = core_logic.load_runtime_context(bundle.config_path)
    _add_item(first, "Pen", price="10", cost="4", stock=5)
    core_logic.persist_context(first)

    second = core_logic.load_runtime_context(bundle.config_path, owner_id="owner-2")
    assert core_logic.list_items(second) == []
    assert len(core_logic.list_items(core_logic.refresh_context(first))) == 1


def test_settings_feed_the_bill(runtime_context):
    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=50)
    snapshots = []
    core_logic.subscribe_settings(context, snapshots.append)

    profile = core_logic.save_settings(context, {"businessName": "Corner Shop", "phone": "0123"})
    sale = _sell(context, {pen.item_id: 2}, buyer_name="Asha", buyer_number="98765 43210")

    text = receipts.generate_bill_text(sale, profile)
    assert snapshots == [{}, profile]
    assert "Corner Shop" in text
    assert "Buyer: Asha" in text
    assert receipts.build_whatsapp_url(text, sale.buyer_number).startswith("whatsapp://send?phone=919876543210")


def test_cli_sale_and_dashboard_flow(config_factory, capsys):
    """Drive the workbook through the CLI entry point only."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "add-item", "--item-id", "I-PEN", "--name", "Pen", "--selling-price", "10", "--cost-price", "4", "--stock", "50"]) == 0
    assert cli.main([*base, "sale", "--line", "I-PEN=2", "--line", "I-PEN=1", "--payment-method", "unpaid"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "sales"]) == 0
    sale_id = capsys.readouterr().out.split("\t", 1)[0].strip()

    assert cli.main([*base, "mark-paid", "--sale-id", sale_id]) == 0
    assert cli.main([*base, "mark-paid", "--sale-id", sale_id]) == 2
    assert cli.main([*base, "sale", "--line", "I-PEN=100", "--payment-method", "paid"]) == 2
    assert cli.main([*base, "sale", "--line", "I-NOPE=1", "--payment-method", "paid"]) == 2

    capsys.readouterr()
    assert cli.main([*base, "items"]) == 0
    assert "stock=47" in capsys.readouterr().out

    assert cli.main([*base, "bill", "--sale-id", sale_id]) == 0
    bill = capsys.readouterr().out
    assert "Test Store" in bill
    assert "Status: Paid" in bill

    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_sale(context, sale_id).total_amount == Decimal("30")


def test_cli_import_flow(config_factory, tmp_path):
    bundle = config_factory()
    source = tmp_path / "export.json"
    source.write_text(
        json.dumps(
            {
                "items": [{"id": "I1", "name": "Pen", "sellingPrice": 10, "costPrice": 4, "stock": 4, "initialStock": 50}],
                "sales": [{"id": "S1", "itemId": "I1", "itemName": "Pen", "quantity": 1, "total": 10}],
            }
        )
    )

    assert cli.main(["--config", str(bundle.config_path), "import", "--source", str(source)]) == 0

    context = core_logic.load_runtime_context(bundle.config_path)
    metrics = analytics.metrics_for_context(context, NOW)
    assert metrics.lifetime.revenue == Decimal("10")
    assert [item.name for item in metrics.low_stock_items] == ["Pen"]


def test_cli_rejects_non_finite_price_without_saving(config_factory):
    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "add-item", "--name", "Pen", "--selling-price", "NaN", "--stock", "5"]) == 1
    assert cli.main([*base, "add-item", "--name", "Pen", "--selling-price", "Infinity", "--stock", "5"]) == 1

    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.list_items(context) == []


def test_rejected_item_update_keeps_cache_and_workbook_in_step(runtime_context):
    context = runtime_context
    pen = _add_item(context, "Pen", price="10", cost="4", stock=50)

    with pytest.raises(KeyError):
        core_logic.update_item(context, pen.item_id, {"name": "Renamed", "bogus": 1})

    assert core_logic.get_item(context, pen.item_id).name == "Pen"
    (stored,) = list(data_manager.iter_items(context.workbook))
    assert stored.name == "Pen"


def test_cli_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "items"]) == 3
