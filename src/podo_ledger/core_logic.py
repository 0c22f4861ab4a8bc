"""Business logic layer for Podo Ledger.

This module contains the rules behind the sales log, the inventory ledger and
the owner balance ledger. It consumes the Data Access Layer (DAL) for all I/O
and funnels every write through :func:`ledger_transaction` so that a sale or a
refund updates the log, the stock and the balance as one unit.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log, settlement
from .constants import (
    BRANCH_OWNER_PREFIXES,
    EXPECTED_SCHEMA_VERSION,
    ITEM_SHEETS,
    UNKNOWN_BRANCH_PREFIX,
    Availability,
    ItemCategory,
    NotificationKind,
    NotificationTarget,
    PaymentMethod,
    RecordStatus,
    SaleStatus,
    SettlementStatus,
    SheetName,
)
from .notifications import NotificationSink, WorkbookNotificationSink
from .time_utils import period_key, utc_date


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced sale, item, owner, branch, or shelf is unknown."""


class AlreadyRefundedError(BusinessRuleViolation):
    """Raised when a refund targets a sale that is already refunded."""


class InventoryInconsistencyError(BusinessRuleViolation):
    """Raised when an item referenced by a sale no longer exists at refund time."""


_ID_FIELDS: Dict[SheetName, str] = {
    SheetName.BRANCHES: "branch_id",
    SheetName.SHELVES: "shelf_id",
    SheetName.OWNERS: "owner_id",
    SheetName.BOOKS: "item_id",
    SheetName.GOODS: "item_id",
    SheetName.SALES: "sale_id",
    SheetName.SETTLEMENTS: "settlement_id",
    SheetName.NOTIFICATIONS: "notification_id",
}

# Allowed sale status transitions; refunded is terminal.
SALE_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    SaleStatus.COMPLETED.value: (SaleStatus.REFUNDED.value,),
    SaleStatus.REFUNDED.value: (),
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, and collaborators used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    notifier: Optional[NotificationSink] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: RLock = field(default_factory=RLock, repr=False, compare=False)


@dataclass(frozen=True)
class ItemRef:
    """Reference to an item in either the book or the goods collection."""

    item_id: str
    category: ItemCategory


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling one unit of an item."""

    item_id: str
    category: ItemCategory
    payment_method: PaymentMethod = PaymentMethod.CARD
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RefundCommand:
    """User intent for refunding a completed sale."""

    sale_id: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SettlementCommand:
    """User intent for closing an owner's settlement period."""

    owner_id: str
    period: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceChange:
    """Outcome of a balance credit or debit."""

    owner_id: str
    requested: int
    applied: int
    balance: int

    @property
    def shortfall(self) -> int:
        """Part of a requested debit that the zero floor prevented."""

        return self.requested - self.applied


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when it is ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are keyed by collection and hold precomputed query results so
    repeated reads do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_collection_cache(context: RuntimeContext, name: SheetName) -> Dict[str, Any]:
    """Populate the cache bucket of a collection on demand.

    Returns:
        dict[str, Any]: Bucket containing the ``all`` rows in sheet order and a
            ``by_id`` lookup dictionary.
    """

    sheet = SheetName(name)
    bucket = _get_cache_bucket(context, sheet.value)
    if "all" not in bucket:
        rows = list(data_manager.load_collection(context.workbook, sheet))
        id_field = _ID_FIELDS[sheet]
        bucket["all"] = rows
        bucket["by_id"] = {getattr(row, id_field): row for row in rows}
        log.debug("Populated %s cache with %d entries", sheet.value, len(rows))
    return bucket


class LedgerSession:
    """Working copies of collections modified within one ledger transaction.

    Collections are loaded lazily from the context cache. Nothing reaches the
    workbook until :meth:`commit`, so abandoning a session discards every
    change made through it.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context
        self._working: Dict[SheetName, List[Any]] = {}
        self._dirty: List[SheetName] = []

    def rows(self, name: SheetName) -> List[Any]:
        sheet = SheetName(name)
        if sheet not in self._working:
            self._working[sheet] = list(_ensure_collection_cache(self.context, sheet)["all"])
        return self._working[sheet]

    def ids(self, name: SheetName) -> set[str]:
        id_field = _ID_FIELDS[SheetName(name)]
        return {getattr(row, id_field) for row in self.rows(name)}

    def find(self, name: SheetName, record_id: str) -> Tuple[int, Any]:
        """Locate a record by primary id.

        Raises:
            MissingReferenceError: If no record carries ``record_id``.
        """

        sheet = SheetName(name)
        id_field = _ID_FIELDS[sheet]
        for index, row in enumerate(self.rows(sheet)):
            if getattr(row, id_field) == record_id:
                return index, row
        log.warning("Lookup failed in %s for id '%s'", sheet.value, record_id)
        raise MissingReferenceError(f"Unknown {sheet.value} id: {record_id}")

    def replace(self, name: SheetName, index: int, row: Any) -> None:
        self.rows(name)[index] = row
        self._mark_dirty(SheetName(name))

    def append(self, name: SheetName, row: Any) -> None:
        self.rows(name).append(row)
        self._mark_dirty(SheetName(name))

    @property
    def dirty(self) -> Tuple[SheetName, ...]:
        return tuple(self._dirty)

    def commit(self) -> None:
        """Write every modified collection back to the workbook.

        All collections are serialized before the first sheet is rewritten so
        that a serialization error leaves the workbook untouched.
        """

        if not self._dirty:
            return
        serialized = [
            (sheet, data_manager.serialize_collection(sheet, self._working[sheet]))
            for sheet in self._dirty
        ]
        for sheet, rows in serialized:
            data_manager.write_serialized_rows(self.context.workbook, sheet, rows)
        _invalidate_cache(self.context, *(sheet.value for sheet in self._dirty))
        log.debug("Committed ledger transaction touching %s", ", ".join(s.value for s in self._dirty))
        self._dirty.clear()

    def _mark_dirty(self, sheet: SheetName) -> None:
        if sheet not in self._dirty:
            self._dirty.append(sheet)


@contextmanager
def ledger_transaction(context: RuntimeContext) -> Iterator[LedgerSession]:
    """Run a block of ledger updates as a single all-or-nothing unit.

    The context lock is held for the whole block so concurrent callers sharing
    a :class:`RuntimeContext` are serialized. Changes are committed to the
    workbook only when the block exits normally; any exception discards them
    and propagates.

    Yields:
        LedgerSession: Session through which the block reads and writes.
    """

    with context._lock:
        session = LedgerSession(context)
        try:
            yield session
        except Exception:
            if session.dirty:
                log.warning(
                    "Rolled back ledger transaction touching %s",
                    ", ".join(sheet.value for sheet in session.dirty),
                )
            raise
        session.commit()


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings, the workbook, and the notification sink.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    notifier = WorkbookNotificationSink(workbook, capacity=settings.notification_capacity)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, notifier=notifier)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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


def list_branches(context: RuntimeContext) -> List[data_manager.BranchRow]:
    return list(_ensure_collection_cache(context, SheetName.BRANCHES)["all"])


def list_shelves(context: RuntimeContext, *, branch_id: Optional[str] = None) -> List[data_manager.ShelfRow]:
    shelves = _ensure_collection_cache(context, SheetName.SHELVES)["all"]
    return [shelf for shelf in shelves if branch_id is None or shelf.branch_id == branch_id]


def list_owners(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.OwnerRow]:
    """Return owners in sheet order, hiding inactive ones unless requested."""
    owners = _ensure_collection_cache(context, SheetName.OWNERS)["all"]
    return [owner for owner in owners if include_inactive or owner.status == RecordStatus.ACTIVE.value]


def list_items(
    context: RuntimeContext,
    category: Optional[ItemCategory] = None,
) -> List[data_manager.ItemRow]:
    """Return books followed by goods, or only one category when requested."""
    categories = [ItemCategory(category)] if category is not None else list(ItemCategory)
    items: List[data_manager.ItemRow] = []
    for current in categories:
        items.extend(_ensure_collection_cache(context, ITEM_SHEETS[current])["all"])
    return items


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Fetch the sales log in insertion order.

    The returned list is a shallow copy, so callers can sort or filter it
    without disturbing the cache.
    """
    return list(_ensure_collection_cache(context, SheetName.SALES)["all"])


def list_settlements(context: RuntimeContext) -> List[data_manager.SettlementRow]:
    return list(_ensure_collection_cache(context, SheetName.SETTLEMENTS)["all"])


def _get_by_id(context: RuntimeContext, name: SheetName, record_id: str) -> Any:
    cache = _ensure_collection_cache(context, name)
    try:
        return cache["by_id"][record_id]
    except KeyError as exc:
        log.warning("%s lookup failed for id '%s'", name.value, record_id)
        raise MissingReferenceError(f"Unknown {name.value} id: {record_id}") from exc


def get_branch(context: RuntimeContext, branch_id: str) -> data_manager.BranchRow:
    return _get_by_id(context, SheetName.BRANCHES, branch_id)


def get_owner(context: RuntimeContext, owner_id: str) -> data_manager.OwnerRow:
    """Resolve an owner by id.

    Raises:
        MissingReferenceError: If ``owner_id`` is absent from the workbook.
    """
    return _get_by_id(context, SheetName.OWNERS, owner_id)


def get_item(context: RuntimeContext, ref: ItemRef) -> data_manager.ItemRow:
    """Resolve an item in the collection matching ``ref.category``.

    Raises:
        MissingReferenceError: If the collection does not hold ``ref.item_id``.
    """
    return _get_by_id(context, ITEM_SHEETS[ItemCategory(ref.category)], ref.item_id)


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale record by id.

    Raises:
        MissingReferenceError: If the log lacks ``sale_id``.
    """
    return _get_by_id(context, SheetName.SALES, sale_id)


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------


def decrement_on_sale(session: LedgerSession, ref: ItemRef) -> data_manager.ItemRow:
    """Take one unit of an item off the shelf.

    A quantity above one is decremented. The last unit takes the quantity to
    zero and flips availability to ``sold`` in the same row replacement, so no
    reader ever observes an available item with zero stock.

    Returns:
        ItemRow: The updated item.

    Raises:
        MissingReferenceError: If the item does not exist.
        BusinessRuleViolation: If the item is already sold out.
    """
    sheet = ITEM_SHEETS[ItemCategory(ref.category)]
    index, item = session.find(sheet, ref.item_id)
    if item.quantity <= 0 or item.availability != Availability.AVAILABLE.value:
        log.warning("Attempted sale of sold-out item '%s'", ref.item_id)
        raise BusinessRuleViolation(f"Item '{ref.item_id}' is sold out")

    if item.quantity > 1:
        updated = replace(item, quantity=item.quantity - 1)
    else:
        updated = replace(item, quantity=0, availability=Availability.SOLD.value)
    session.replace(sheet, index, updated)
    log.debug("Decremented item '%s' to quantity %d", ref.item_id, updated.quantity)
    return updated


def increment_on_refund(session: LedgerSession, ref: ItemRef) -> data_manager.ItemRow:
    """Return one unit of an item to the shelf and force it available.

    Raises:
        MissingReferenceError: If the item does not exist anymore.
    """
    sheet = ITEM_SHEETS[ItemCategory(ref.category)]
    index, item = session.find(sheet, ref.item_id)
    updated = replace(item, quantity=item.quantity + 1, availability=Availability.AVAILABLE.value)
    session.replace(sheet, index, updated)
    log.debug("Incremented item '%s' to quantity %d", ref.item_id, updated.quantity)
    return updated


# ---------------------------------------------------------------------------
# Owner balance ledger
# ---------------------------------------------------------------------------


def credit_owner(session: LedgerSession, owner_id: Optional[str], amount: int) -> Optional[BalanceChange]:
    """Add ``amount`` to an owner's balance.

    House items carry no owner; for them the call is a no-op returning
    ``None``.

    Raises:
        MissingReferenceError: If ``owner_id`` is set but unknown.
        ValueError: If ``amount`` is negative.
    """
    if owner_id is None:
        return None
    require_nonnegative_amount(amount)
    index, owner = session.find(SheetName.OWNERS, owner_id)
    updated = replace(owner, balance=owner.balance + amount)
    session.replace(SheetName.OWNERS, index, updated)
    return BalanceChange(owner_id=owner_id, requested=amount, applied=amount, balance=updated.balance)


def debit_owner(session: LedgerSession, owner_id: Optional[str], amount: int) -> Optional[BalanceChange]:
    """Subtract ``amount`` from an owner's balance, never going below zero.

    When the balance is smaller than ``amount`` it is floored at zero and the
    unapplied remainder is reported as :attr:`BalanceChange.shortfall` and
    logged as ledger drift. House items (``owner_id is None``) are a no-op.

    Raises:
        MissingReferenceError: If ``owner_id`` is set but unknown.
        ValueError: If ``amount`` is negative.
    """
    if owner_id is None:
        return None
    require_nonnegative_amount(amount)
    index, owner = session.find(SheetName.OWNERS, owner_id)
    new_balance = max(0, owner.balance - amount)
    session.replace(SheetName.OWNERS, index, replace(owner, balance=new_balance))
    change = BalanceChange(
        owner_id=owner_id,
        requested=amount,
        applied=owner.balance - new_balance,
        balance=new_balance,
    )
    if change.shortfall:
        log.warning(
            "Ledger drift: debit of %d on owner '%s' floored at zero (balance was %d, shortfall %d)",
            amount,
            owner_id,
            owner.balance,
            change.shortfall,
        )
    return change


# ---------------------------------------------------------------------------
# Sales transaction log
# ---------------------------------------------------------------------------


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Sell one unit of an item and append the sale to the log.

    Inside one ledger transaction the workflow splits the price, appends a
    ``completed`` sale that freezes price, condition, split, owner, branch and
    payment method, takes the unit off the shelf, and credits the owner's
    share. An owner notification is emitted once the transaction committed.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: Newly appended sale.

    Raises:
        BusinessRuleViolation: If the payment method is unsupported or the
            item is sold out.
        MissingReferenceError: If the item or its owner is unknown.
    """
    if not isinstance(command.payment_method, PaymentMethod):
        log.error("Unsupported payment method provided: %s", command.payment_method)
        raise BusinessRuleViolation(f"Unsupported payment method: {command.payment_method}")

    timestamp = _resolve_timestamp(command.timestamp)
    ref = ItemRef(command.item_id, ItemCategory(command.category))

    with context._lock:
        with ledger_transaction(context) as session:
            _, item = session.find(ITEM_SHEETS[ref.category], ref.item_id)
            result = settlement.split(item.price, item.category, item.condition)
            sale = build_sale_row(
                item,
                result,
                sale_id=generate_record_id("SL", when=timestamp, existing=session.ids(SheetName.SALES)),
                timestamp=timestamp,
                payment_method=command.payment_method,
            )
            session.append(SheetName.SALES, sale)
            decrement_on_sale(session, ref)
            credit_owner(session, item.owner_id, result.owner_amount)

        log.info(
            "Recorded sale '%s' of %s '%s' (price=%d, shop=%d, owner=%d)",
            sale.sale_id,
            ref.category.value,
            ref.item_id,
            sale.price,
            sale.shop_amount,
            sale.owner_amount,
        )
        if sale.owner_id is not None:
            _notify(
                context,
                NotificationKind.SALE,
                f"{sale.item_title} sold (₩{sale.price:,} -> your share ₩{sale.owner_amount:,})",
                target_type=NotificationTarget.OWNER,
                target_id=sale.owner_id,
            )
    return sale


def record_refund(context: RuntimeContext, command: RefundCommand) -> data_manager.SaleRow:
    """Refund a completed sale and reverse its inventory and balance effects.

    The status flip to ``refunded``, the stock increment and the balance debit
    run in one ledger transaction: either all of them land or none does.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (RefundCommand): Structured refund intent.

    Returns:
        data_manager.SaleRow: The sale in its refunded state.

    Raises:
        MissingReferenceError: If the sale id is unknown.
        AlreadyRefundedError: If the sale was refunded before; nothing changes.
        InventoryInconsistencyError: If the sold item no longer exists.
    """
    timestamp = _resolve_timestamp(command.timestamp)

    with context._lock:
        with ledger_transaction(context) as session:
            index, sale = session.find(SheetName.SALES, command.sale_id)
            if sale.status == SaleStatus.REFUNDED.value:
                log.warning("Refund rejected: sale '%s' is already refunded", sale.sale_id)
                raise AlreadyRefundedError(f"Sale '{sale.sale_id}' is already refunded")
            validate_sale_transition(sale, SaleStatus.REFUNDED)

            refunded = replace(sale, status=SaleStatus.REFUNDED.value, refunded_at=timestamp.isoformat())
            session.replace(SheetName.SALES, index, refunded)

            ref = ItemRef(sale.item_id, ItemCategory(sale.item_category))
            try:
                increment_on_refund(session, ref)
            except MissingReferenceError as exc:
                log.error("Refund of sale '%s' aborted: item '%s' is gone", sale.sale_id, sale.item_id)
                raise InventoryInconsistencyError(
                    f"Item '{sale.item_id}' referenced by sale '{sale.sale_id}' no longer exists"
                ) from exc
            debit_owner(session, sale.owner_id, sale.owner_amount)

        log.info("Recorded refund of sale '%s' (price=%d)", refunded.sale_id, refunded.price)
        _notify(
            context,
            NotificationKind.REFUND,
            f"{refunded.item_title} refunded (₩{refunded.price:,})",
            target_type=NotificationTarget.OWNER if refunded.owner_id else NotificationTarget.ALL,
            target_id=refunded.owner_id,
        )
    return refunded


def validate_sale_transition(sale: data_manager.SaleRow, target: SaleStatus) -> None:
    """Confirm ``sale`` may move to ``target``.

    Raises:
        BusinessRuleViolation: If the transition is not allowed.
    """
    if SaleStatus(target).value not in SALE_TRANSITIONS.get(sale.status, ()):
        log.error("Sale '%s' cannot move from '%s' to '%s'", sale.sale_id, sale.status, SaleStatus(target).value)
        raise BusinessRuleViolation(
            f"Sale '{sale.sale_id}' cannot transition from '{sale.status}' to '{SaleStatus(target).value}'"
        )


def build_sale_row(
    item: data_manager.ItemRow,
    result: settlement.SplitResult,
    *,
    sale_id: str,
    timestamp: datetime,
    payment_method: PaymentMethod,
) -> data_manager.SaleRow:
    """Materialize a sale from the item as it is at the moment of sale.

    Price, condition, split and references are copied so later edits to the
    item never alter the recorded sale.
    """
    return data_manager.SaleRow(
        sale_id=sale_id,
        item_id=item.item_id,
        item_category=item.category.value,
        item_title=item.display_name,
        price=item.price,
        condition=item.condition,
        shop_amount=result.shop_amount,
        owner_amount=result.owner_amount,
        owner_id=item.owner_id,
        owner_number=item.owner_number or None,
        branch_id=item.branch_id,
        payment_method=payment_method.value,
        status=SaleStatus.COMPLETED.value,
        created_at=timestamp.isoformat(),
        refunded_at=None,
    )


# ---------------------------------------------------------------------------
# Settlements
# ---------------------------------------------------------------------------


def record_settlement(context: RuntimeContext, command: SettlementCommand) -> data_manager.SettlementRow:
    """Close an owner's settlement period and pay out the period's share.

    Only a month that ended before the settlement timestamp can be settled.
    The period summary nets the owner's completed sales of the month against
    current shelf rent. The settlement is appended as ``completed`` and the
    owner's balance is debited by the period's owner amount, floored at zero
    like any debit.

    Raises:
        MissingReferenceError: If the owner is unknown.
        BusinessRuleViolation: If the period has not ended yet at the
            settlement timestamp, or was already settled for the owner.
        ValueError: If the period is not a ``YYYY-MM`` string.
    """
    timestamp = _resolve_timestamp(command.timestamp)

    with context._lock:
        with ledger_transaction(context) as session:
            _, owner = session.find(SheetName.OWNERS, command.owner_id)
            summary = settlement.summarize_period(
                owner,
                session.rows(SheetName.SALES),
                session.rows(SheetName.SHELVES),
                command.period,
            )
            if summary.period >= period_key(utc_date(timestamp)):
                log.warning("Period %s is not closed yet for owner '%s'", summary.period, owner.owner_id)
                raise BusinessRuleViolation(f"Period {summary.period} is not closed yet")
            for existing in session.rows(SheetName.SETTLEMENTS):
                if existing.owner_id == owner.owner_id and existing.period == summary.period:
                    log.warning("Period %s already settled for owner '%s'", summary.period, owner.owner_id)
                    raise BusinessRuleViolation(
                        f"Period {summary.period} is already settled for owner '{owner.owner_id}'"
                    )

            row = data_manager.SettlementRow(
                settlement_id=generate_record_id("ST", when=timestamp, existing=session.ids(SheetName.SETTLEMENTS)),
                period=summary.period,
                owner_id=owner.owner_id,
                owner_number=owner.owner_number,
                owner_name=owner.name,
                total_sales=summary.total_sales,
                shop_amount=summary.shop_amount,
                owner_amount=summary.owner_amount,
                rent=summary.rent,
                final_amount=summary.final_amount,
                status=SettlementStatus.COMPLETED.value,
                paid_at=timestamp.isoformat(),
            )
            session.append(SheetName.SETTLEMENTS, row)
            debit_owner(session, owner.owner_id, summary.owner_amount)

        log.info(
            "Recorded settlement '%s' for owner '%s' period %s (final=%d)",
            row.settlement_id,
            owner.owner_id,
            row.period,
            row.final_amount,
        )
        _notify(
            context,
            NotificationKind.SETTLEMENT,
            f"Settlement for {row.period} completed (₩{row.final_amount:,})",
            target_type=NotificationTarget.OWNER,
            target_id=owner.owner_id,
        )
    return row


# ---------------------------------------------------------------------------
# Catalog intake
# ---------------------------------------------------------------------------


def generate_owner_number(branch_id: str, owners: Iterable[data_manager.OwnerRow]) -> str:
    """Return the next display number for an owner of ``branch_id``.

    Numbers combine the branch prefix with a three digit sequence, e.g.
    ``MP001``. Branches without a configured prefix use ``XX``.
    """
    prefix = BRANCH_OWNER_PREFIXES.get(branch_id, UNKNOWN_BRANCH_PREFIX)
    taken = {owner.owner_number for owner in owners}
    sequence = sum(1 for owner in owners if owner.branch_id == branch_id) + 1
    candidate = f"{prefix}{sequence:03d}"
    while candidate in taken:
        sequence += 1
        candidate = f"{prefix}{sequence:03d}"
    return candidate


def register_owner(
    context: RuntimeContext,
    *,
    name: str,
    branch_id: str,
    phone: Optional[str] = None,
    bank_account: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.OwnerRow:
    """Create an active owner with a zero balance and no shelves.

    Raises:
        MissingReferenceError: If the branch is unknown.
        ValueError: If ``name`` is blank.
    """
    if not name or not name.strip():
        raise ValueError("Owner name must not be empty")
    when = _resolve_timestamp(timestamp)

    with ledger_transaction(context) as session:
        session.find(SheetName.BRANCHES, branch_id)
        owners = session.rows(SheetName.OWNERS)
        owner = data_manager.OwnerRow(
            owner_id=generate_record_id("OW", when=when, existing=session.ids(SheetName.OWNERS)),
            owner_number=generate_owner_number(branch_id, owners),
            name=name.strip(),
            branch_id=branch_id,
            shelf_codes=(),
            balance=0,
            status=RecordStatus.ACTIVE.value,
            phone=phone,
            bank_account=bank_account,
            created_at=when.date().isoformat(),
        )
        session.append(SheetName.OWNERS, owner)

    log.info("Registered owner '%s' (%s) in branch '%s'", owner.owner_id, owner.owner_number, branch_id)
    return owner


def assign_shelf(context: RuntimeContext, *, branch_id: str, shelf_code: str, owner_id: str) -> data_manager.ShelfRow:
    """Rent a free shelf of a branch to an owner of the same branch.

    The shelf's ``owner_id`` and the owner's ``shelf_codes`` are updated in one
    transaction.

    Raises:
        MissingReferenceError: If the owner or the shelf is unknown.
        BusinessRuleViolation: If the shelf is held by another owner or the
            owner belongs to another branch.
    """
    with ledger_transaction(context) as session:
        owner_index, owner = session.find(SheetName.OWNERS, owner_id)
        if owner.branch_id != branch_id:
            raise BusinessRuleViolation(f"Owner '{owner_id}' does not belong to branch '{branch_id}'")

        for shelf_index, shelf in enumerate(session.rows(SheetName.SHELVES)):
            if shelf.branch_id == branch_id and shelf.code == shelf_code:
                break
        else:
            log.warning("Shelf '%s' not found in branch '%s'", shelf_code, branch_id)
            raise MissingReferenceError(f"Unknown shelf '{shelf_code}' in branch '{branch_id}'")

        if shelf.owner_id not in (None, owner_id):
            log.warning("Shelf '%s' in branch '%s' is held by '%s'", shelf_code, branch_id, shelf.owner_id)
            raise BusinessRuleViolation(f"Shelf '{shelf_code}' is already rented")

        updated_shelf = replace(shelf, owner_id=owner_id)
        session.replace(SheetName.SHELVES, shelf_index, updated_shelf)
        if shelf_code not in owner.shelf_codes:
            session.replace(
                SheetName.OWNERS,
                owner_index,
                replace(owner, shelf_codes=(*owner.shelf_codes, shelf_code)),
            )

    log.info("Assigned shelf '%s' in branch '%s' to owner '%s'", shelf_code, branch_id, owner_id)
    return updated_shelf


def add_book(
    context: RuntimeContext,
    *,
    branch_id: str,
    title: str,
    price: int,
    condition: str,
    quantity: int = 1,
    owner_id: Optional[str] = None,
    shelf_code: Optional[str] = None,
    isbn: Optional[str] = None,
    author: Optional[str] = None,
    publisher: Optional[str] = None,
    pub_year: Optional[str] = None,
    original_price: Optional[int] = None,
    item_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.BookRow:
    """Register a consigned book. See :func:`_add_item` for validation rules."""
    extra = {
        "isbn": isbn.replace("-", "") if isbn else None,
        "title": title,
        "author": author,
        "publisher": publisher,
        "pub_year": pub_year,
        "original_price": original_price,
    }
    return _add_item(
        context,
        data_manager.BookRow,
        extra,
        branch_id=branch_id,
        price=price,
        condition=condition,
        quantity=quantity,
        owner_id=owner_id,
        shelf_code=shelf_code,
        item_id=item_id,
        timestamp=timestamp,
    )


def add_goods(
    context: RuntimeContext,
    *,
    branch_id: str,
    name: str,
    price: int,
    condition: str,
    quantity: int = 1,
    owner_id: Optional[str] = None,
    shelf_code: Optional[str] = None,
    item_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.GoodsRow:
    """Register consigned or house-made goods."""
    return _add_item(
        context,
        data_manager.GoodsRow,
        {"name": name},
        branch_id=branch_id,
        price=price,
        condition=condition,
        quantity=quantity,
        owner_id=owner_id,
        shelf_code=shelf_code,
        item_id=item_id,
        timestamp=timestamp,
    )


def _add_item(
    context: RuntimeContext,
    row_type: type,
    extra: Dict[str, Any],
    *,
    branch_id: str,
    price: int,
    condition: str,
    quantity: int,
    owner_id: Optional[str],
    shelf_code: Optional[str],
    item_id: Optional[str],
    timestamp: Optional[datetime],
) -> Any:
    """Validate and append an item row of ``row_type``.

    Prices must be positive integers and quantities non-negative integers.
    Availability follows from the quantity. An owner, when given, must exist
    and belong to the branch; a shelf code, when given, must exist in the
    branch.
    """
    require_positive_price(price)
    require_nonnegative_quantity(quantity)
    when = _resolve_timestamp(timestamp)
    category: ItemCategory = row_type.category
    sheet = ITEM_SHEETS[category]

    with ledger_transaction(context) as session:
        session.find(SheetName.BRANCHES, branch_id)
        owner_number = ""
        if owner_id is not None:
            _, owner = session.find(SheetName.OWNERS, owner_id)
            if owner.branch_id != branch_id:
                raise BusinessRuleViolation(f"Owner '{owner_id}' does not belong to branch '{branch_id}'")
            owner_number = owner.owner_number
        if shelf_code and not any(
            shelf.branch_id == branch_id and shelf.code == shelf_code for shelf in session.rows(SheetName.SHELVES)
        ):
            raise MissingReferenceError(f"Unknown shelf '{shelf_code}' in branch '{branch_id}'")

        existing = session.ids(sheet)
        if item_id is None:
            item_id = generate_record_id("BK" if category is ItemCategory.BOOK else "GD", when=when, existing=existing)
        elif item_id in existing:
            raise BusinessRuleViolation(f"Item id '{item_id}' already exists")

        item = row_type(
            item_id=item_id,
            branch_id=branch_id,
            shelf_code=shelf_code or None,
            owner_id=owner_id,
            owner_number=owner_number,
            price=price,
            quantity=quantity,
            condition=condition,
            availability=(Availability.AVAILABLE if quantity > 0 else Availability.SOLD).value,
            created_at=when.date().isoformat(),
            **extra,
        )
        session.append(sheet, item)

    log.info("Added %s '%s' to branch '%s' (price=%d, qty=%d)", category.value, item_id, branch_id, price, quantity)
    return item


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _notify(
    context: RuntimeContext,
    kind: NotificationKind,
    message: str,
    *,
    target_type: NotificationTarget,
    target_id: Optional[str],
) -> None:
    """Hand an event to the notification sink without affecting the ledger.

    Delivery failures are logged and swallowed: by the time this runs the
    ledger transaction has already committed.
    """
    if context.notifier is None:
        return
    try:
        context.notifier.emit(kind, message, target_type=target_type, target_id=target_id)
    except Exception:
        log.exception("Failed to deliver %s notification", kind.value)


def generate_record_id(prefix: str, *, when: Optional[datetime] = None, existing: Iterable[str] = ()) -> str:
    """Generate a sortable identifier from a UTC timestamp.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}``, with a ``-N`` suffix appended
            when that value is already in ``existing``.
    """
    when = when or _resolve_timestamp(None)
    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    taken = set(existing)
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def require_positive_price(price: int) -> None:
    """Validate that a price is a positive whole number of currency units.

    Raises:
        ValueError: If ``price`` is not an ``int`` or is zero or negative.
    """
    if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
        log.error("Price validation failed: %r", price)
        raise ValueError("Price must be a positive integer")


def require_nonnegative_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValueError("Quantity must be a non-negative integer")


def require_nonnegative_amount(amount: int) -> None:
    if amount < 0:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache, and a notification sink bound to the new workbook when the
            previous one was workbook-backed.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    notifier: Union[NotificationSink, None] = context.notifier
    if isinstance(notifier, WorkbookNotificationSink):
        notifier = WorkbookNotificationSink(workbook, capacity=notifier.capacity)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, notifier=notifier)
