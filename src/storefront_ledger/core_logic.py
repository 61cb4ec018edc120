"""Business logic layer for the storefront ledger.

This module owns the rules around inventory records, carts, and sales. It
consumes the Data Access Layer (DAL) for all I/O and threads an explicit
:class:`RuntimeContext` through every call: the context names the store owner,
holds the live workbook, and carries the change feeds that push fresh
snapshots to observers after each mutation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, PaymentMethod, SaleShape


ITEMS_TOPIC = "items"
SALES_TOPIC = "sales"
SETTINGS_TOPIC = "settings"

_EPOCH = datetime.min.replace(tzinfo=UTC)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced item or sale is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a cart asks for more units than the item has on hand."""


Observer = Callable[[Any], None]
ErrorHandler = Callable[[Exception], None]


class ChangeFeed:
    """Push-based observer registry keyed by topic.

    Subscribers receive the current snapshot as soon as they subscribe and a
    new one after every mutation published on their topic. A failing observer
    is reported to its own error handler and never stops delivery to the
    others.
    """

    def __init__(self) -> None:
        self._observers: Dict[str, List[tuple[Observer, Optional[ErrorHandler]]]] = {}

    def subscribe(
        self,
        topic: str,
        on_change: Observer,
        on_error: Optional[ErrorHandler] = None,
        *,
        snapshot: Any = None,
    ) -> Callable[[], None]:
        entry = (on_change, on_error)
        self._observers.setdefault(topic, []).append(entry)
        log.debug("Observer attached to '%s' (%d total)", topic, len(self._observers[topic]))
        self._deliver(topic, entry, snapshot)

        def unsubscribe() -> None:
            observers = self._observers.get(topic, [])
            if entry in observers:
                observers.remove(entry)
                log.debug("Observer detached from '%s'", topic)

        return unsubscribe

    def has_observers(self, topic: str) -> bool:
        return bool(self._observers.get(topic))

    def publish(self, topic: str, snapshot: Any) -> None:
        for entry in list(self._observers.get(topic, [])):
            self._deliver(topic, entry, snapshot)

    def _deliver(self, topic: str, entry: tuple[Observer, Optional[ErrorHandler]], snapshot: Any) -> None:
        on_change, on_error = entry
        try:
            on_change(snapshot)
        except Exception as exc:
            if on_error is None:
                log.exception("Observer on '%s' failed", topic)
            else:
                on_error(exc)


@dataclass(frozen=True)
class RuntimeContext:
    """Session state for one store owner: settings, workbook, caches, feeds."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    owner_id: str
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _feed: ChangeFeed = field(default_factory=ChangeFeed, repr=False, compare=False)


@dataclass(frozen=True)
class AddItemCommand:
    """User intent for registering a new inventory item."""

    name: str
    selling_price: Decimal
    stock: int
    cost_price: Decimal = Decimal("0")
    category: Optional[str] = None
    barcode: Optional[str] = None
    item_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CartLine:
    """One cart entry: the item as it looked when added, and the quantity."""

    item: data_manager.ItemRow
    quantity: int


@dataclass(frozen=True)
class RecordSaleCommand:
    """User intent for turning a cart into a sale."""

    lines: Sequence[CartLine]
    payment_method: PaymentMethod
    buyer_name: Optional[str] = None
    buyer_number: Optional[str] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when it is ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after mutating workbook state; missing names are ignored."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the item bucket on demand.

    ``all`` holds the owner's items newest ``updated_at`` first, the order in
    which the item feed delivers them; ``by_id`` serves point lookups.
    """

    bucket = _get_cache_bucket(context, "items")
    if "all" not in bucket:
        rows = list(data_manager.iter_items(context.workbook, context.owner_id))
        rows.sort(key=lambda item: item.updated_at or _EPOCH, reverse=True)
        bucket["all"] = rows
        bucket["by_id"] = {item.item_id: item for item in rows}
        log.debug("Populated items cache with %d entries", len(rows))
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        rows = list(data_manager.iter_sales(context.workbook, context.owner_id))
        rows.sort(key=lambda sale: sale.timestamp or _EPOCH, reverse=True)
        bucket["all"] = rows
        bucket["by_id"] = {sale.sale_id: sale for sale in rows}
        log.debug("Populated sales cache with %d entries", len(rows))
    return bucket


def _publish(context: RuntimeContext, *topics: str) -> None:
    for topic in topics:
        if not context._feed.has_observers(topic):
            continue
        context._feed.publish(topic, _snapshot(context, topic))


def _snapshot(context: RuntimeContext, topic: str) -> Any:
    if topic == ITEMS_TOPIC:
        return list_items(context)
    if topic == SALES_TOPIC:
        return list_sales(context)
    if topic == SETTINGS_TOPIC:
        return get_settings(context)
    raise KeyError(f"Unknown topic: {topic}")


def load_runtime_context(config_path: Optional[Path] = None, *, owner_id: Optional[str] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for one store owner.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.
        owner_id (str | None): Owner whose records the session works on.
            Defaults to ``[Defaults] OwnerID`` from the configuration.

    Returns:
        RuntimeContext: Context with empty caches and no observers.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    owner = owner_id or settings.default_owner_id
    log.info("Loaded runtime context for workbook '%s' (owner '%s')", settings.data_file, owner)
    return RuntimeContext(settings=settings, workbook=workbook, owner_id=owner)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with another schema version.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_items(context: RuntimeContext) -> List[data_manager.ItemRow]:
    """Return the owner's items, most recently updated first."""
    return list(_ensure_items_cache(context)["all"])


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return the owner's sales, newest first."""
    return list(_ensure_sales_cache(context)["all"])


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item by id.

    Raises:
        MissingReferenceError: If the owner has no such item.
    """
    cache = _ensure_items_cache(context)
    try:
        return cache["by_id"][item_id]
    except KeyError as exc:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}") from exc


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale by id.

    Raises:
        MissingReferenceError: If the owner has no such sale.
    """
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc


def get_settings(context: RuntimeContext) -> Dict[str, str]:
    """Return the owner's business profile (empty when never saved)."""
    return data_manager.read_settings(context.workbook, context.owner_id)


def subscribe_items(context: RuntimeContext, on_change: Observer, on_error: Optional[ErrorHandler] = None) -> Callable[[], None]:
    """Observe the item list; returns the unsubscribe callable."""
    return context._feed.subscribe(ITEMS_TOPIC, on_change, on_error, snapshot=list_items(context))


def subscribe_sales(context: RuntimeContext, on_change: Observer, on_error: Optional[ErrorHandler] = None) -> Callable[[], None]:
    """Observe the sale list; returns the unsubscribe callable."""
    return context._feed.subscribe(SALES_TOPIC, on_change, on_error, snapshot=list_sales(context))


def subscribe_settings(context: RuntimeContext, on_change: Observer, on_error: Optional[ErrorHandler] = None) -> Callable[[], None]:
    """Observe the business profile; returns the unsubscribe callable."""
    return context._feed.subscribe(SETTINGS_TOPIC, on_change, on_error, snapshot=get_settings(context))


def add_item(context: RuntimeContext, command: AddItemCommand) -> data_manager.ItemRow:
    """Validate and append a new inventory item.

    The item's ``initial_stock`` is a snapshot of the stock it was created
    with; later low-stock checks are measured against it.

    Raises:
        BusinessRuleViolation: If the name is blank or the id is taken.
        ValueError: If prices or stock are negative.
    """
    name = (command.name or "").strip()
    if not name:
        log.warning("Attempted to add an item without a name")
        raise BusinessRuleViolation("Item name is required")
    require_nonnegative_money(command.selling_price)
    require_nonnegative_money(command.cost_price)
    require_nonnegative_quantity(command.stock)

    timestamp = _resolve_timestamp(command.timestamp)
    item_id = command.item_id or generate_record_id(prefix="I", when=timestamp)
    if item_id in _ensure_items_cache(context)["by_id"]:
        log.warning("Attempted to add duplicate item id '%s'", item_id)
        raise BusinessRuleViolation(f"Item '{item_id}' already exists")

    item = data_manager.ItemRow(
        item_id=item_id,
        owner_id=context.owner_id,
        name=name,
        category=command.category,
        selling_price=command.selling_price,
        cost_price=command.cost_price,
        stock=command.stock,
        initial_stock=command.stock,
        barcode=command.barcode,
        created_at=timestamp,
        updated_at=timestamp,
    )
    data_manager.append_item(context.workbook, item)
    _invalidate_cache(context, "items")
    log.info("Added item '%s' (%s) with stock %d", item.item_id, item.name, item.stock)
    _publish(context, ITEMS_TOPIC)
    return item


def update_item(context: RuntimeContext, item_id: str, field_values: Mapping[str, Any]) -> data_manager.ItemRow:
    """Apply a partial update to an item and refresh its ``updated_at``.

    Raises:
        MissingReferenceError: If the item is unknown.
        KeyError: If a field name is not an editable item attribute.
        ValueError: If a price or stock value is negative.
    """
    get_item(context, item_id)
    unknown = sorted(name for name in field_values if name not in data_manager.ITEM_FIELD_COLUMNS)
    if unknown:
        raise KeyError(f"Unknown item field(s): {', '.join(unknown)}")
    for money_field in ("selling_price", "cost_price"):
        if money_field in field_values:
            require_nonnegative_money(field_values[money_field])
    for count_field in ("stock", "initial_stock"):
        if count_field in field_values:
            require_nonnegative_quantity(field_values[count_field])

    values = dict(field_values)
    values["updated_at"] = _resolve_timestamp(None)
    data_manager.update_item(context.workbook, item_id, field_values=values, owner_id=context.owner_id)
    _invalidate_cache(context, "items")
    log.info("Updated item '%s' fields: %s", item_id, ", ".join(sorted(field_values)))
    _publish(context, ITEMS_TOPIC)
    return get_item(context, item_id)


def delete_item(context: RuntimeContext, item_id: str) -> None:
    """Delete an item. Historical sales keep their copy of its name and price.

    Raises:
        MissingReferenceError: If the item is unknown.
    """
    get_item(context, item_id)
    data_manager.delete_item(context.workbook, item_id, owner_id=context.owner_id)
    _invalidate_cache(context, "items")
    log.info("Deleted item '%s'", item_id)
    _publish(context, ITEMS_TOPIC)


def build_cart(context: RuntimeContext, quantities: Mapping[str, int]) -> List[CartLine]:
    """Assemble cart lines from ``item_id -> quantity`` and check stock.

    This is the only place where requested quantities are compared with the
    displayed stock. :func:`record_sale` trusts the cart it is given.

    Raises:
        BusinessRuleViolation: If ``quantities`` is empty.
        MissingReferenceError: If an item id is unknown.
        InsufficientStockError: If a quantity exceeds the item's stock.
        ValueError: If a quantity is not a positive integer.
    """
    if not quantities:
        raise BusinessRuleViolation("Cart is empty")

    lines: List[CartLine] = []
    for item_id, quantity in quantities.items():
        item = get_item(context, item_id)
        require_positive_quantity(quantity)
        if quantity > item.stock:
            log.warning(
                "Cart rejected: %d x '%s' requested, %d in stock",
                quantity,
                item.item_id,
                item.stock,
            )
            raise InsufficientStockError(f"Only {item.stock} of '{item.name}' in stock")
        lines.append(CartLine(item=item, quantity=quantity))
    return lines


def record_sale(context: RuntimeContext, command: RecordSaleCommand) -> data_manager.SaleRow:
    """Turn a cart into one sale and decrement stock for every line.

    The sale record and all stock decrements are handed to the store's
    all-or-nothing batch in a single call, so either every change lands or
    none does. Stock is reduced by a signed delta without re-checking the
    current level.

    Args:
        context (RuntimeContext): Session naming the owner and workbook.
        command (RecordSaleCommand): Cart lines and payment metadata.

    Returns:
        data_manager.SaleRow: The stored sale with its commit timestamp.

    Raises:
        BusinessRuleViolation: If the cart is empty or the payment method is
            not a :class:`PaymentMethod`.
        ValueError: If a quantity is not a positive integer.
        data_manager.AtomicWriteError: If the store rejected the batch.
    """
    if not command.lines:
        log.warning("Attempted to record a sale with an empty cart")
        raise BusinessRuleViolation("Cart is empty")
    for line in command.lines:
        require_positive_quantity(line.quantity)
    if not isinstance(command.payment_method, PaymentMethod):
        log.error("Unsupported payment method provided: %s", command.payment_method)
        raise BusinessRuleViolation(f"Unsupported payment method: {command.payment_method}")

    sale_id = generate_record_id(prefix="S", when=_resolve_timestamp(command.timestamp))
    sale = build_sale_record(command, sale_id=sale_id, owner_id=context.owner_id)
    deltas = [data_manager.StockDelta(item_id=line.item.item_id, delta=-line.quantity) for line in command.lines]

    try:
        committed = data_manager.commit_sale_batch(
            context.workbook,
            sale,
            deltas,
            timestamp=command.timestamp,
        )
    except data_manager.AtomicWriteError:
        log.error("Sale '%s' was not recorded", sale_id)
        raise

    _invalidate_cache(context, "items", "sales")
    log.info(
        "Recorded sale '%s' with %d line(s) (total=%s, payment=%s)",
        committed.sale_id,
        len(committed.lines),
        committed.total_amount,
        committed.payment_method.value,
    )
    _publish(context, ITEMS_TOPIC, SALES_TOPIC)
    return committed


def build_sale_record(command: RecordSaleCommand, *, sale_id: str, owner_id: str) -> data_manager.SaleRow:
    """Materialize a :class:`RecordSaleCommand` into a sale row.

    Each line is priced at the item's selling price from the cart snapshot,
    and the sale total is the sum of the line totals.
    """
    lines = tuple(
        data_manager.SaleLine(
            item_id=line.item.item_id,
            item_name=line.item.name,
            quantity=line.quantity,
            unit_price=line.item.selling_price,
            line_total=line.item.selling_price * line.quantity,
        )
        for line in command.lines
    )
    total_amount = sum((line.line_total for line in lines), Decimal("0"))
    return data_manager.SaleRow(
        sale_id=sale_id,
        owner_id=owner_id,
        lines=lines,
        total_amount=total_amount,
        payment_method=command.payment_method,
        shape=SaleShape.ITEMIZED,
        buyer_name=command.buyer_name or None,
        buyer_number=command.buyer_number or None,
        timestamp=None,
    )


def mark_sale_paid(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Move an unpaid sale to paid.

    ``unpaid -> paid`` is the only legal payment transition; ``paid`` and
    ``upi`` are terminal. The update touches the payment column only.

    Raises:
        MissingReferenceError: If the sale is unknown.
        BusinessRuleViolation: If the sale is not unpaid.
    """
    sale = get_sale(context, sale_id)
    if sale.payment_method is not PaymentMethod.UNPAID:
        log.error(
            "Cannot mark sale '%s' as paid: payment method is '%s'",
            sale_id,
            sale.payment_method.value,
        )
        raise BusinessRuleViolation(
            f"Sale '{sale_id}' is '{sale.payment_method.value}'; only unpaid sales can be marked as paid"
        )

    data_manager.update_sale_field(
        context.workbook,
        sale_id,
        "payment_method",
        PaymentMethod.PAID,
        owner_id=context.owner_id,
    )
    _invalidate_cache(context, "sales")
    log.info("Marked sale '%s' as paid", sale_id)
    _publish(context, SALES_TOPIC)
    return replace(sale, payment_method=PaymentMethod.PAID)


def save_settings(context: RuntimeContext, values: Mapping[str, Any]) -> Dict[str, str]:
    """Merge ``values`` into the owner's business profile and return the result."""
    data_manager.write_settings(context.workbook, context.owner_id, values)
    log.info("Saved settings keys: %s", ", ".join(sorted(values)))
    _publish(context, SETTINGS_TOPIC)
    return get_settings(context)


def import_documents(
    context: RuntimeContext,
    *,
    items: Iterable[Mapping[str, Any]] = (),
    sales: Iterable[Mapping[str, Any]] = (),
) -> Dict[str, int]:
    """Import exported item and sale documents as historical records.

    Sales of either shape are stored as they were; stock is not touched
    because the exported item documents already reflect those sales. Records
    whose id already exists are skipped.

    Returns:
        dict[str, int]: Number of ``items`` and ``sales`` imported.
    """
    imported = {"items": 0, "sales": 0}
    known_items = set(_ensure_items_cache(context)["by_id"])
    for document in items:
        item = data_manager.normalize_item_document(document, owner_id=context.owner_id)
        if not item.item_id:
            item = replace(item, item_id=generate_record_id(prefix="I"))
        if item.item_id in known_items:
            log.warning("Skipping import of existing item '%s'", item.item_id)
            continue
        data_manager.append_item(context.workbook, item)
        known_items.add(item.item_id)
        imported["items"] += 1

    known_sales = set(_ensure_sales_cache(context)["by_id"])
    for document in sales:
        sale = data_manager.normalize_sale_document(document, owner_id=context.owner_id)
        if not sale.sale_id:
            sale = replace(sale, sale_id=generate_record_id(prefix="S", when=sale.timestamp))
        if sale.sale_id in known_sales:
            log.warning("Skipping import of existing sale '%s'", sale.sale_id)
            continue
        data_manager.append_sale(context.workbook, sale)
        known_sales.add(sale.sale_id)
        imported["sales"] += 1

    _invalidate_cache(context, "items", "sales")
    log.info("Imported %d item(s) and %d sale(s)", imported["items"], imported["sales"])
    _publish(context, ITEMS_TOPIC, SALES_TOPIC)
    return imported


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}-{6 hex chars}``. The suffix keeps
            ids unique when two records share a timestamp.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def require_positive_quantity(quantity: Any) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is below one.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a positive whole number")


def require_nonnegative_quantity(quantity: Any) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        log.error("Stock validation failed: %s", quantity)
        raise ValueError("Stock must be a whole number of zero or more")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, dropping unsaved changes.

    The returned context keeps the owner and the change feed, so existing
    observers receive the reloaded snapshots.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    refreshed = RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        owner_id=context.owner_id,
        _feed=context._feed,
    )
    _publish(refreshed, ITEMS_TOPIC, SALES_TOPIC, SETTINGS_TOPIC)
    return refreshed
