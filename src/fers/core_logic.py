"""Business logic layer for the FERS shop.

This module holds the rules of the shop: the product catalog and its stock
levels, customer and administrator accounts, and the order lifecycle that
moves a checkout from ``CREATED`` through acceptance or rejection to
delivery. All reads and writes go through :mod:`fers.data_manager`; nothing
here prints, so every outcome reaches the caller either as a return value or
as a :class:`BusinessRuleViolation` subclass.

Multi-step writes (checkout, approval, rejection) run inside :func:`atomic`,
which snapshots the sheets they touch and restores them if any step fails.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .cart import Cart, CartEntry
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    AccountRole,
    PaymentMethod,
    PaymentStatus,
    SheetName,
    TransactionStatus,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced account, item, order or payment is unknown."""


class DuplicateUsernameError(BusinessRuleViolation):
    """Raised when registering a name that already belongs to an account."""


class AuthenticationError(BusinessRuleViolation):
    """Raised when a name/password pair matches no account."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when a session's role does not allow the requested operation."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when checking out a cart with no entries."""


class PersistenceError(BusinessRuleViolation):
    """Raised when the data layer fails to apply a write."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when an order is asked to move along an edge the lifecycle lacks."""

    def __init__(self, transaction_id: int, current: str, target: TransactionStatus):
        super().__init__(
            f"Order {transaction_id} cannot move from {current} to {target.value}"
        )
        self.transaction_id = transaction_id
        self.current = current
        self.target = target


class InsufficientStockError(BusinessRuleViolation):
    """Raised when current stock cannot cover a requested quantity."""

    def __init__(self, message: str, details: Optional[List[Dict[str, int]]] = None):
        super().__init__(message)
        self.details = details or []


# Lifecycle graph. REJECTED and DELIVERED are terminal.
ALLOWED_TRANSITIONS: Mapping[TransactionStatus, frozenset] = {
    TransactionStatus.CREATED: frozenset({TransactionStatus.ACCEPTED, TransactionStatus.REJECTED}),
    TransactionStatus.ACCEPTED: frozenset({TransactionStatus.DELIVERED}),
    TransactionStatus.REJECTED: frozenset(),
    TransactionStatus.DELIVERED: frozenset(),
}

_CACHE_BUCKETS = ("accounts", "inventory", "transactions")

_ORDER_SHEETS = (
    SheetName.TRANSACTIONS.value,
    SheetName.LINE_ITEMS.value,
    SheetName.PAYMENTS.value,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass
class Session:
    """The signed-in account and the cart it owns.

    Sessions are created by :func:`open_session` and passed explicitly to
    every operation that needs them; no module keeps one globally.
    """

    account: data_manager.AccountRow
    cart: Cart = field(default_factory=Cart)


@dataclass(frozen=True)
class OrderDetails:
    """An order together with its lines and its payment, if any."""

    transaction: data_manager.TransactionRow
    line_items: List[data_manager.LineItemRow]
    payment: Optional[data_manager.PaymentRow]


def _resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket ``name``, creating it on first use."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write so the next read rebuilds them."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_accounts_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "accounts")
    if "all" not in bucket:
        all_accounts = list(data_manager.iter_accounts(context.workbook))
        bucket["all"] = all_accounts
        bucket["by_id"] = {account.account_id: account for account in all_accounts}
        bucket["by_name"] = {account.account_name: account for account in all_accounts}
        log.debug("Populated accounts cache with %d entries", len(all_accounts))
    return bucket


def _ensure_inventory_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the catalog cache bucket on demand.

    The bucket keeps the items in ascending id order under ``all`` and an
    id lookup under ``by_id``. Any stock change invalidates it.
    """

    bucket = _get_cache_bucket(context, "inventory")
    if "all" not in bucket:
        all_items = sorted(data_manager.iter_inventory_items(context.workbook), key=lambda item: item.item_id)
        bucket["all"] = all_items
        bucket["by_id"] = {item.item_id: item for item in all_items}
        log.debug("Populated inventory cache with %d entries", len(all_items))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the order cache bucket on demand.

    ``all`` is stored most recent first (creation timestamp, then id, both
    descending) so listing never re-sorts.
    """

    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = sorted(
            data_manager.iter_transactions(context.workbook),
            key=lambda row: (row.created_at, row.transaction_id),
            reverse=True,
        )
        bucket["all"] = all_transactions
        bucket["by_id"] = {row.transaction_id: row for row in all_transactions}
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


@contextmanager
def atomic(context: RuntimeContext, *sheet_names: str) -> Iterator[None]:
    """Run a block of writes as one unit over ``sheet_names``.

    The data rows of every named sheet are captured on entry. If the block
    raises, the sheets are put back exactly as captured, every cache bucket
    is dropped and the exception propagates unchanged. The ``Sequences``
    sheet is never captured, so ids consumed by a failed block are not
    handed out again.
    """

    snapshot = data_manager.snapshot_sheets(context.workbook, sheet_names)
    try:
        yield
    except Exception:
        data_manager.restore_sheets(context.workbook, snapshot)
        _invalidate_cache(context, *_CACHE_BUCKETS)
        log.warning("Rolled back sheets %s after a failed operation", ", ".join(sheet_names))
        raise


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override for ``config.ini``. When
            omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Settings, workbook handle and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook whose declared layout version differs.

    Raises:
        RuntimeError: If ``SchemaVersion`` in the configuration does not match
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


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: New context with a freshly opened workbook and an
            empty cache; the old context should no longer be used.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def register_account(
    context: RuntimeContext,
    account_name: str,
    password: str,
    role: AccountRole = AccountRole.CUSTOMER,
) -> data_manager.AccountRow:
    """Create an account after checking the name is free.

    Names are compared exactly, so ``"Alice"`` and ``"alice"`` are different
    accounts. The role is fixed here and no later operation changes it.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        account_name (str): Login name; must not already exist.
        password (str): Stored and later compared as given.
        role (AccountRole): ``CUSTOMER`` unless an administrator is created.

    Returns:
        data_manager.AccountRow: The stored account with its generated id.

    Raises:
        DuplicateUsernameError: If ``account_name`` is already registered.
    """
    role = AccountRole(role)
    if account_name in _ensure_accounts_cache(context)["by_name"]:
        log.warning("Registration refused: username '%s' already exists", account_name)
        raise DuplicateUsernameError(f"Username already exists: {account_name}")

    record = data_manager.AccountRow(
        account_id=None,
        account_name=account_name,
        password=password,
        role=role.value,
    )
    stored = data_manager.append_account(context.workbook, record)
    _invalidate_cache(context, "accounts")
    log.info("Registered %s account '%s' (id=%s)", role.value, account_name, stored.account_id)
    return stored


def authenticate(context: RuntimeContext, account_name: str, password: str) -> data_manager.AccountRow:
    """Return the account whose name and password both match exactly.

    Raises:
        AuthenticationError: For an unknown name and for a wrong password
            alike; callers cannot tell the two apart.
    """
    account = _ensure_accounts_cache(context)["by_name"].get(account_name)
    if account is None or account.password != password:
        log.warning("Authentication failed for username '%s'", account_name)
        raise AuthenticationError("Invalid username or password")
    log.info("Authenticated '%s' (%s)", account.account_name, account.role)
    return account


def get_account(context: RuntimeContext, account_id: int) -> data_manager.AccountRow:
    cache = _ensure_accounts_cache(context)
    try:
        return cache["by_id"][account_id]
    except KeyError as exc:
        log.warning("Account lookup failed for id '%s'", account_id)
        raise NotFoundError(f"Unknown account id: {account_id}") from exc


def has_admin_privileges(account: Optional[data_manager.AccountRow]) -> bool:
    return account is not None and account.role == AccountRole.ADMIN.value


def is_regular_customer(account: Optional[data_manager.AccountRow]) -> bool:
    return account is not None and account.role == AccountRole.CUSTOMER.value


def open_session(context: RuntimeContext, account_name: str, password: str) -> Session:
    """Authenticate and hand back a session with an empty cart."""
    return Session(account=authenticate(context, account_name, password))


def require_admin(session: Session) -> None:
    if not has_admin_privileges(session.account):
        log.warning("Account '%s' attempted an administrator operation", session.account.account_name)
        raise PermissionDeniedError("Administrator privileges required")


def require_customer(session: Session) -> None:
    if not is_regular_customer(session.account):
        log.warning("Account '%s' attempted a customer operation", session.account.account_name)
        raise PermissionDeniedError("Customer account required")


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


def list_inventory_items(context: RuntimeContext) -> List[data_manager.InventoryItemRow]:
    """Return every catalog item in ascending id order."""
    return list(_ensure_inventory_cache(context)["all"])


def get_inventory_item(context: RuntimeContext, item_id: int) -> data_manager.InventoryItemRow:
    """Resolve a catalog item by id.

    Raises:
        NotFoundError: If no item carries ``item_id``.
    """
    cache = _ensure_inventory_cache(context)
    try:
        return cache["by_id"][item_id]
    except KeyError as exc:
        log.warning("Inventory lookup failed for id '%s'", item_id)
        raise NotFoundError(f"Unknown inventory item id: {item_id}") from exc


def add_inventory_item(
    context: RuntimeContext,
    item_name: str,
    description: str,
    price: Decimal,
    stock: int,
) -> data_manager.InventoryItemRow:
    """Add a product to the catalog.

    Prices and stock are stored as given; negative values are accepted.
    """
    record = data_manager.InventoryItemRow(
        item_id=None,
        item_name=item_name,
        description=description,
        price=Decimal(str(price)),
        stock=int(stock),
    )
    stored = data_manager.append_inventory_item(context.workbook, record)
    _invalidate_cache(context, "inventory")
    log.info("Added inventory item '%s' (id=%s, price=%s, stock=%s)", item_name, stored.item_id, price, stock)
    return stored


def update_inventory_item(
    context: RuntimeContext,
    item_id: int,
    *,
    item_name: str,
    description: str,
    price: Decimal,
    stock: int,
) -> data_manager.InventoryItemRow:
    """Overwrite every editable field of a catalog item.

    Existing order lines keep their purchase price; only future checkouts
    see the new price.

    Raises:
        NotFoundError: If no item carries ``item_id``.
    """
    get_inventory_item(context, item_id)
    data_manager.update_inventory_item(
        context.workbook,
        item_id,
        field_values={
            "ItemName": item_name,
            "Description": description,
            "Price": Decimal(str(price)),
            "Stock": int(stock),
        },
    )
    _invalidate_cache(context, "inventory")
    log.info("Updated inventory item %s", item_id)
    return get_inventory_item(context, item_id)


def delete_inventory_item(context: RuntimeContext, item_id: int) -> None:
    """Remove a catalog item.

    Raises:
        NotFoundError: If no item carries ``item_id``.
    """
    try:
        data_manager.delete_inventory_item(context.workbook, item_id)
    except KeyError as exc:
        log.warning("Delete refused: inventory item %s not found", item_id)
        raise NotFoundError(f"Unknown inventory item id: {item_id}") from exc
    _invalidate_cache(context, "inventory")
    log.info("Deleted inventory item %s", item_id)


def adjust_stock(context: RuntimeContext, item_id: int, quantity: int) -> bool:
    """Decrement an item's stock by ``quantity`` with no floor.

    Returns:
        bool: ``False`` if the item does not exist.
    """
    changed = data_manager.decrement_stock(context.workbook, item_id, quantity)
    if changed:
        _invalidate_cache(context, "inventory")
        log.info("Adjusted stock of item %s by -%s", item_id, quantity)
    else:
        log.warning("Stock adjustment skipped: inventory item %s not found", item_id)
    return changed


def add_to_cart(context: RuntimeContext, cart: Cart, item_id: int, quantity: int) -> CartEntry:
    """Validate a cart addition against the catalog, then add it.

    The check only compares ``quantity`` with current stock; it does not
    account for what the cart already holds, and nothing is reserved.

    Raises:
        NotFoundError: If the item does not exist.
        InsufficientStockError: If ``quantity`` exceeds current stock.
    """
    item = get_inventory_item(context, item_id)
    if item.stock < quantity:
        log.warning("Cart addition refused for item %s: requested %s, available %s", item_id, quantity, item.stock)
        raise InsufficientStockError(
            f"Insufficient stock for item {item_id}: available {item.stock}",
            details=[{"item_id": item_id, "requested_quantity": quantity, "stock": item.stock}],
        )
    return cart.add(item, quantity)


# ---------------------------------------------------------------------------
# Order lifecycle
# ---------------------------------------------------------------------------


def validate_transition(transaction: data_manager.TransactionRow, target: TransactionStatus) -> None:
    """Ensure ``transaction`` may move to ``target``.

    Raises:
        InvalidTransitionError: If ``target`` is not reachable in one step
            from the current status, including every move out of a terminal
            state and any unknown stored status.
    """
    try:
        current = TransactionStatus(transaction.status)
    except ValueError:
        current = None
    if current is None or target not in ALLOWED_TRANSITIONS[current]:
        log.warning(
            "Rejected transition of order %s from %s to %s",
            transaction.transaction_id,
            transaction.status,
            target.value,
        )
        raise InvalidTransitionError(transaction.transaction_id, transaction.status, target)


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return every order, most recent first."""
    return list(_ensure_transactions_cache(context)["all"])


def list_transactions_for_account(context: RuntimeContext, account_id: int) -> List[data_manager.TransactionRow]:
    """Return the orders placed by ``account_id``, most recent first."""
    return [row for row in _ensure_transactions_cache(context)["all"] if row.account_id == account_id]


def get_transaction(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    """Resolve an order by id.

    Raises:
        NotFoundError: If no order carries ``transaction_id``.
    """
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}") from exc


def list_line_items(context: RuntimeContext, transaction_id: int) -> List[data_manager.LineItemRow]:
    """Return the lines of an order in insertion order."""
    return [row for row in data_manager.iter_line_items(context.workbook) if row.transaction_id == transaction_id]


def get_payment_for_transaction(context: RuntimeContext, transaction_id: int) -> data_manager.PaymentRow:
    """Return the payment attached to an order.

    Raises:
        NotFoundError: If the order has no payment row.
    """
    for payment in data_manager.iter_payments(context.workbook):
        if payment.transaction_id == transaction_id:
            return payment
    log.warning("Payment lookup failed for transaction '%s'", transaction_id)
    raise NotFoundError(f"No payment recorded for transaction id: {transaction_id}")


def get_order_details(context: RuntimeContext, transaction_id: int) -> OrderDetails:
    transaction = get_transaction(context, transaction_id)
    try:
        payment = get_payment_for_transaction(context, transaction_id)
    except NotFoundError:
        payment = None
    return OrderDetails(
        transaction=transaction,
        line_items=list_line_items(context, transaction_id),
        payment=payment,
    )


def calculate_cart_total(cart_entries: Iterable[CartEntry]) -> Decimal:
    return sum((entry.subtotal for entry in cart_entries), Decimal("0"))


def create_transaction(
    context: RuntimeContext,
    account_id: int,
    cart_entries: Iterable[CartEntry],
    payment_method: Union[PaymentMethod, str],
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.TransactionRow:
    """Turn cart contents into a ``CREATED`` order with lines and a payment.

    The total is computed once from the cart and stored as a snapshot; each
    line records the item's price as it is now, so later catalog edits never
    change an order. The simulated payment is recorded as ``SUCCESS`` for the
    full total. The order, its lines and its payment are written in one
    atomic scope: if any insert fails none of them remain.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        account_id (int): Account placing the order.
        cart_entries (Iterable[CartEntry]): Items and quantities to order.
        payment_method (PaymentMethod | str): ``ONLINE``, ``CARD`` or ``COD``.
        timestamp (datetime | None): Creation time; defaults to now (UTC).

    Returns:
        data_manager.TransactionRow: The stored order with its generated id.

    Raises:
        ValueError: If ``payment_method`` is not a known method.
        PersistenceError: If the data layer rejects one of the inserts.
    """
    method = PaymentMethod(payment_method)
    entries = list(cart_entries)
    total = calculate_cart_total(entries)
    created_at = _resolve_timestamp(timestamp).isoformat()

    try:
        with atomic(context, *_ORDER_SHEETS):
            transaction = data_manager.append_transaction(
                context.workbook,
                data_manager.TransactionRow(
                    transaction_id=None,
                    account_id=account_id,
                    status=TransactionStatus.CREATED.value,
                    created_at=created_at,
                    total=total,
                ),
            )
            for entry in entries:
                data_manager.append_line_item(
                    context.workbook,
                    data_manager.LineItemRow(
                        line_item_id=None,
                        transaction_id=transaction.transaction_id,
                        item_id=entry.item.item_id,
                        quantity=entry.quantity,
                        price_at_purchase=entry.item.price,
                    ),
                )
            data_manager.append_payment(
                context.workbook,
                data_manager.PaymentRow(
                    payment_id=None,
                    transaction_id=transaction.transaction_id,
                    method=method.value,
                    status=PaymentStatus.SUCCESS.value,
                    amount=total,
                    paid_at=created_at,
                ),
            )
    except KeyError as exc:
        log.error("Order creation for account %s failed: %s", account_id, exc)
        raise PersistenceError(f"Failed to create order: {exc}") from exc

    _invalidate_cache(context, "transactions")
    log.info(
        "Created order %s for account %s (lines=%d, total=%s, payment=%s)",
        transaction.transaction_id,
        account_id,
        len(entries),
        total,
        method.value,
    )
    return transaction


def checkout(
    context: RuntimeContext,
    session: Session,
    payment_method: Union[PaymentMethod, str],
) -> data_manager.TransactionRow:
    """Create an order from the session cart and empty the cart.

    Raises:
        EmptyCartError: If the cart holds no entries.
    """
    if not session.cart:
        raise EmptyCartError("Your cart is empty")
    transaction = create_transaction(context, session.account.account_id, session.cart.entries, payment_method)
    session.cart.clear()
    return transaction


def _set_status(context: RuntimeContext, transaction_id: int, status: TransactionStatus) -> None:
    try:
        data_manager.update_transaction_status(context.workbook, transaction_id, status.value)
    except KeyError as exc:
        log.error("Status update of order %s to %s failed: %s", transaction_id, status.value, exc)
        raise PersistenceError(f"Failed to update order {transaction_id}: {exc}") from exc


def _requested_quantities(lines: Iterable[data_manager.LineItemRow]) -> Dict[int, int]:
    totals: Dict[int, int] = {}
    for line in lines:
        totals[line.item_id] = totals.get(line.item_id, 0) + line.quantity
    return totals


def approve_transaction(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    """Accept a ``CREATED`` order and deduct its stock.

    Requested quantities are summed per item and checked against current
    stock before anything is deducted; every short item is reported in one
    :class:`InsufficientStockError`. Each line is then deducted with a
    conditional decrement that refuses to go below zero, and the order moves
    to ``ACCEPTED``. All of it runs in one atomic scope, so a failure leaves
    stock levels and the order status as they were.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        transaction_id (int): Order to accept.

    Returns:
        data_manager.TransactionRow: The order as stored after acceptance.

    Raises:
        NotFoundError: If the order, or an item one of its lines refers to,
            does not exist.
        InvalidTransitionError: If the order is not ``CREATED``.
        InsufficientStockError: If any item's stock is below the requested
            quantity.
        PersistenceError: If the status update fails.
    """
    transaction = get_transaction(context, transaction_id)
    validate_transition(transaction, TransactionStatus.ACCEPTED)
    lines = list_line_items(context, transaction_id)

    with atomic(context, SheetName.INVENTORY_ITEMS.value, SheetName.TRANSACTIONS.value):
        shortages = []
        for item_id, quantity in _requested_quantities(lines).items():
            item = get_inventory_item(context, item_id)
            if item.stock < quantity:
                shortages.append({"item_id": item_id, "requested_quantity": quantity, "stock": item.stock})
        if shortages:
            log.warning("Order %s not accepted: insufficient stock for %s", transaction_id, shortages)
            raise InsufficientStockError(
                "Insufficient stock for item(s): " + ", ".join(str(entry["item_id"]) for entry in shortages),
                details=shortages,
            )

        for line in lines:
            if not data_manager.decrement_stock_if_available(context.workbook, line.item_id, line.quantity):
                raise InsufficientStockError(
                    f"Insufficient stock for item {line.item_id}",
                    details=[{"item_id": line.item_id, "requested_quantity": line.quantity}],
                )
        _set_status(context, transaction_id, TransactionStatus.ACCEPTED)

    _invalidate_cache(context, "inventory", "transactions")
    log.info("Accepted order %s; inventory deducted for %d line(s)", transaction_id, len(lines))
    return get_transaction(context, transaction_id)


def decline_transaction(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    """Reject a ``CREATED`` order and refund its simulated payment.

    The status change and the refund share one atomic scope: the payment is
    ``REFUNDED`` exactly when the order ends up ``REJECTED``. An order that
    has no payment row is still rejected; there is simply nothing to refund.

    Raises:
        NotFoundError: If the order does not exist.
        InvalidTransitionError: If the order is not ``CREATED``.
        PersistenceError: If either write fails.
    """
    transaction = get_transaction(context, transaction_id)
    validate_transition(transaction, TransactionStatus.REJECTED)
    try:
        get_payment_for_transaction(context, transaction_id)
        has_payment = True
    except NotFoundError:
        has_payment = False

    with atomic(context, SheetName.TRANSACTIONS.value, SheetName.PAYMENTS.value):
        _set_status(context, transaction_id, TransactionStatus.REJECTED)
        if has_payment:
            _refund_payment(context, transaction_id)
        else:
            log.warning("Order %s has no payment to refund", transaction_id)

    _invalidate_cache(context, "transactions")
    log.info("Rejected order %s", transaction_id)
    return get_transaction(context, transaction_id)


def _refund_payment(context: RuntimeContext, transaction_id: int) -> None:
    try:
        data_manager.update_payment_status(context.workbook, transaction_id, PaymentStatus.REFUNDED.value)
    except KeyError as exc:
        log.error("Refund of order %s failed: %s", transaction_id, exc)
        raise PersistenceError(f"Failed to refund order {transaction_id}: {exc}") from exc
    log.info("Refunded payment of order %s", transaction_id)


def mark_delivered(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    """Move an ``ACCEPTED`` order to ``DELIVERED``.

    Raises:
        NotFoundError: If the order does not exist.
        InvalidTransitionError: If the order is not ``ACCEPTED``.
    """
    transaction = get_transaction(context, transaction_id)
    validate_transition(transaction, TransactionStatus.DELIVERED)
    _set_status(context, transaction_id, TransactionStatus.DELIVERED)
    _invalidate_cache(context, "transactions")
    log.info("Order %s marked as delivered", transaction_id)
    return get_transaction(context, transaction_id)
