"""Data access layer for Podo Ledger.

This module provides low-level helpers that read from and write to the
``podo_master.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting, and reloading the Excel file.
3. Collection operations: loading every record of a sheet as typed rows and
   replacing a sheet's records as a whole.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_NOTIFICATION_CAPACITY, ItemCategory, SheetName


CONFIG_FILE_NAME = "config.ini"

ITEM_COLUMNS: Sequence[str] = (
    "ItemID",
    "BranchID",
    "ShelfCode",
    "OwnerID",
    "OwnerNumber",
    "Price",
    "Quantity",
    "Condition",
    "Availability",
    "CreatedAt",
)

# Header row of every sheet, in column order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.BRANCHES.value: ["BranchID", "BranchName", "Code", "Address", "Status"],
    SheetName.SHELVES.value: ["ShelfID", "Code", "BranchID", "ShelfType", "Price", "OwnerID"],
    SheetName.OWNERS.value: [
        "OwnerID",
        "OwnerNumber",
        "OwnerName",
        "BranchID",
        "ShelfCodes",
        "Balance",
        "Status",
        "Phone",
        "BankAccount",
        "CreatedAt",
    ],
    SheetName.BOOKS.value: [
        *ITEM_COLUMNS,
        "ISBN",
        "Title",
        "Author",
        "Publisher",
        "PubYear",
        "OriginalPrice",
    ],
    SheetName.GOODS.value: [*ITEM_COLUMNS, "Name"],
    SheetName.SALES.value: [
        "SaleID",
        "ItemID",
        "ItemCategory",
        "ItemTitle",
        "Price",
        "Condition",
        "ShopAmount",
        "OwnerAmount",
        "OwnerID",
        "OwnerNumber",
        "BranchID",
        "PaymentMethod",
        "Status",
        "CreatedAt",
        "RefundedAt",
    ],
    SheetName.SETTLEMENTS.value: [
        "SettlementID",
        "Period",
        "OwnerID",
        "OwnerNumber",
        "OwnerName",
        "TotalSales",
        "ShopAmount",
        "OwnerAmount",
        "Rent",
        "FinalAmount",
        "Status",
        "PaidAt",
    ],
    SheetName.NOTIFICATIONS.value: [
        "NotificationID",
        "Kind",
        "Message",
        "TargetType",
        "TargetID",
        "IsRead",
        "CreatedAt",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_payment_method: str
    notification_capacity: int = DEFAULT_NOTIFICATION_CAPACITY


@dataclass(frozen=True)
class BranchRow:
    """In-memory view of a row from the ``Branches`` sheet."""

    branch_id: str
    name: str
    code: str
    address: str
    status: str


@dataclass(frozen=True)
class ShelfRow:
    """In-memory view of a row from the ``Shelves`` sheet."""

    shelf_id: str
    code: str
    branch_id: str
    shelf_type: str
    price: int
    owner_id: Optional[str]


@dataclass(frozen=True)
class OwnerRow:
    """In-memory view of a row from the ``Owners`` sheet."""

    owner_id: str
    owner_number: str
    name: str
    branch_id: str
    shelf_codes: Tuple[str, ...]
    balance: int
    status: str
    phone: Optional[str]
    bank_account: Optional[str]
    created_at: str


@dataclass(frozen=True)
class ItemRow:
    """Shape shared by every consigned item regardless of category.

    Concrete rows are :class:`BookRow` and :class:`GoodsRow`; the ``category``
    class attribute tells the two apart without probing fields.
    """

    category: ClassVar[ItemCategory]

    item_id: str
    branch_id: str
    shelf_code: Optional[str]
    owner_id: Optional[str]
    owner_number: str
    price: int
    quantity: int
    condition: str
    availability: str
    created_at: str

    @property
    def display_name(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class BookRow(ItemRow):
    """In-memory view of a row from the ``Books`` sheet."""

    category: ClassVar[ItemCategory] = ItemCategory.BOOK

    isbn: Optional[str]
    title: str
    author: Optional[str]
    publisher: Optional[str]
    pub_year: Optional[str]
    original_price: Optional[int]

    @property
    def display_name(self) -> str:
        return self.title


@dataclass(frozen=True)
class GoodsRow(ItemRow):
    """In-memory view of a row from the ``Goods`` sheet."""

    category: ClassVar[ItemCategory] = ItemCategory.GOODS

    name: str

    @property
    def display_name(self) -> str:
        return self.name


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    item_id: str
    item_category: str
    item_title: str
    price: int
    condition: str
    shop_amount: int
    owner_amount: int
    owner_id: Optional[str]
    owner_number: Optional[str]
    branch_id: str
    payment_method: str
    status: str
    created_at: str
    refunded_at: Optional[str]


@dataclass(frozen=True)
class SettlementRow:
    """In-memory view of a row from the ``Settlements`` sheet."""

    settlement_id: str
    period: str
    owner_id: str
    owner_number: str
    owner_name: str
    total_sales: int
    shop_amount: int
    owner_amount: int
    rent: int
    final_amount: int
    status: str
    paid_at: Optional[str]


@dataclass(frozen=True)
class NotificationRow:
    """In-memory view of a row from the ``Notifications`` sheet."""

    notification_id: str
    kind: str
    message: str
    target_type: str
    target_id: Optional[str]
    is_read: bool
    created_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Required entries live under ``[System]`` (``DataFile``, ``ShopName``,
    ``SchemaVersion``) and ``[Defaults]`` (``PaymentMethod``). The
    ``[Ledger] NotificationCapacity`` entry is optional. Relative data file
    paths are anchored to ``base_path`` (or the current working directory)
    and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used for relative ``DataFile``
            entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``NotificationCapacity`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_payment = parser.get("Defaults", "PaymentMethod")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    capacity = parser.getint("Ledger", "NotificationCapacity", fallback=DEFAULT_NOTIFICATION_CAPACITY)
    if capacity <= 0:
        raise ValueError(f"NotificationCapacity must be positive, got {capacity}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_payment_method=default_payment,
        notification_capacity=capacity,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def load_collection(workbook: Workbook, name: SheetName) -> List[Any]:
    """Load every record of a collection as typed rows in sheet order.

    The header row and fully empty rows are skipped. Each remaining row is
    converted by the deserializer registered for ``name``.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        name (SheetName): Collection to load.

    Returns:
        list: Row dataclasses in the order they appear on the sheet.

    Raises:
        KeyError: If the workbook lacks the sheet.
    """

    sheet_name = SheetName(name).value
    deserialize = _DESERIALIZERS[SheetName(name)]
    sheet = workbook[sheet_name]
    records = []
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            records.append(deserialize(raw))
    return records


def save_collection(workbook: Workbook, name: SheetName, records: Iterable[Any]) -> None:
    """Replace every data row of a collection's sheet with ``records``.

    Records are serialized before the sheet is touched so a serialization
    failure leaves the sheet as it was. The header row is preserved.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        name (SheetName): Collection to overwrite.
        records (Iterable): Row dataclasses in the desired order.
    """

    rows = serialize_collection(name, records)
    write_serialized_rows(workbook, name, rows)


def serialize_collection(name: SheetName, records: Iterable[Any]) -> List[List[object]]:
    """Serialize ``records`` into worksheet rows for collection ``name``."""

    serialize = _SERIALIZERS[SheetName(name)]
    return [serialize(record) for record in records]


def write_serialized_rows(workbook: Workbook, name: SheetName, rows: Sequence[Sequence[object]]) -> None:
    """Overwrite the data rows of a sheet with already serialized values."""

    sheet = workbook[SheetName(name).value]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    # Addressed writes: ``append`` keeps its cursor past deleted rows.
    for row_index, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)
    log.debug("Wrote %d rows to sheet '%s'", len(rows), sheet.title)


def _optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def _as_int(value: object, default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


def _optional_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def serialize_branch(record: BranchRow) -> list[object]:
    return [record.branch_id, record.name, record.code, record.address, record.status]


def deserialize_branch(raw_row: Sequence[object]) -> BranchRow:
    branch_id, name, code, address, status = raw_row[:5]
    return BranchRow(
        branch_id=str(branch_id),
        name=str(name),
        code=str(code),
        address=str(address) if address is not None else "",
        status=str(status),
    )


def serialize_shelf(record: ShelfRow) -> list[object]:
    return [record.shelf_id, record.code, record.branch_id, record.shelf_type, record.price, record.owner_id]


def deserialize_shelf(raw_row: Sequence[object]) -> ShelfRow:
    shelf_id, code, branch_id, shelf_type, price, owner_id = raw_row[:6]
    return ShelfRow(
        shelf_id=str(shelf_id),
        code=str(code),
        branch_id=str(branch_id),
        shelf_type=str(shelf_type),
        price=_as_int(price),
        owner_id=_optional_str(owner_id),
    )


def serialize_owner(record: OwnerRow) -> list[object]:
    """Convert an owner dataclass into the worksheet column ordering.

    Shelf codes are stored as a single comma separated cell.
    """

    return [
        record.owner_id,
        record.owner_number,
        record.name,
        record.branch_id,
        ",".join(record.shelf_codes),
        record.balance,
        record.status,
        record.phone,
        record.bank_account,
        record.created_at,
    ]


def deserialize_owner(raw_row: Sequence[object]) -> OwnerRow:
    (
        owner_id,
        owner_number,
        name,
        branch_id,
        shelf_codes_raw,
        balance,
        status,
        phone,
        bank_account,
        created_at,
    ) = raw_row[:10]
    shelf_codes = tuple(code.strip() for code in str(shelf_codes_raw or "").split(",") if code.strip())
    return OwnerRow(
        owner_id=str(owner_id),
        owner_number=str(owner_number),
        name=str(name),
        branch_id=str(branch_id),
        shelf_codes=shelf_codes,
        balance=_as_int(balance),
        status=str(status),
        phone=_optional_str(phone),
        bank_account=_optional_str(bank_account),
        created_at=str(created_at) if created_at is not None else "",
    )


def _serialize_item_base(record: ItemRow) -> list[object]:
    return [
        record.item_id,
        record.branch_id,
        record.shelf_code,
        record.owner_id,
        record.owner_number,
        record.price,
        record.quantity,
        record.condition,
        record.availability,
        record.created_at,
    ]


def _deserialize_item_base(raw_row: Sequence[object]) -> Dict[str, Any]:
    (
        item_id,
        branch_id,
        shelf_code,
        owner_id,
        owner_number,
        price,
        quantity,
        condition,
        availability,
        created_at,
    ) = raw_row[: len(ITEM_COLUMNS)]
    return {
        "item_id": str(item_id),
        "branch_id": str(branch_id),
        "shelf_code": _optional_str(shelf_code),
        "owner_id": _optional_str(owner_id),
        "owner_number": str(owner_number) if owner_number is not None else "",
        "price": _as_int(price),
        "quantity": _as_int(quantity),
        "condition": str(condition) if condition is not None else "",
        "availability": str(availability),
        "created_at": str(created_at) if created_at is not None else "",
    }


def serialize_book(record: BookRow) -> list[object]:
    return [
        *_serialize_item_base(record),
        record.isbn,
        record.title,
        record.author,
        record.publisher,
        record.pub_year,
        record.original_price,
    ]


def deserialize_book(raw_row: Sequence[object]) -> BookRow:
    base = _deserialize_item_base(raw_row)
    isbn, title, author, publisher, pub_year, original_price = raw_row[len(ITEM_COLUMNS): len(ITEM_COLUMNS) + 6]
    return BookRow(
        **base,
        isbn=_optional_str(isbn),
        title=str(title) if title is not None else "",
        author=_optional_str(author),
        publisher=_optional_str(publisher),
        pub_year=_optional_str(pub_year),
        original_price=_optional_int(original_price),
    )


def serialize_goods(record: GoodsRow) -> list[object]:
    return [*_serialize_item_base(record), record.name]


def deserialize_goods(raw_row: Sequence[object]) -> GoodsRow:
    base = _deserialize_item_base(raw_row)
    name = raw_row[len(ITEM_COLUMNS)]
    return GoodsRow(**base, name=str(name) if name is not None else "")


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the ``Sales`` column ordering."""

    return [
        record.sale_id,
        record.item_id,
        record.item_category,
        record.item_title,
        record.price,
        record.condition,
        record.shop_amount,
        record.owner_amount,
        record.owner_id,
        record.owner_number,
        record.branch_id,
        record.payment_method,
        record.status,
        record.created_at,
        record.refunded_at,
    ]


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a strongly typed sale record.

    Monetary columns are coerced to ``int`` because Excel may hand back floats
    for whole numbers; optional references stay ``None`` when blank.
    """

    (
        sale_id,
        item_id,
        item_category,
        item_title,
        price,
        condition,
        shop_amount,
        owner_amount,
        owner_id,
        owner_number,
        branch_id,
        payment_method,
        status,
        created_at,
        refunded_at,
    ) = raw_row[:15]
    return SaleRow(
        sale_id=str(sale_id),
        item_id=str(item_id),
        item_category=str(item_category),
        item_title=str(item_title) if item_title is not None else "",
        price=_as_int(price),
        condition=str(condition) if condition is not None else "",
        shop_amount=_as_int(shop_amount),
        owner_amount=_as_int(owner_amount),
        owner_id=_optional_str(owner_id),
        owner_number=_optional_str(owner_number),
        branch_id=str(branch_id),
        payment_method=str(payment_method),
        status=str(status),
        created_at=str(created_at),
        refunded_at=_optional_str(refunded_at),
    )


def serialize_settlement(record: SettlementRow) -> list[object]:
    return [
        record.settlement_id,
        record.period,
        record.owner_id,
        record.owner_number,
        record.owner_name,
        record.total_sales,
        record.shop_amount,
        record.owner_amount,
        record.rent,
        record.final_amount,
        record.status,
        record.paid_at,
    ]


def deserialize_settlement(raw_row: Sequence[object]) -> SettlementRow:
    (
        settlement_id,
        period,
        owner_id,
        owner_number,
        owner_name,
        total_sales,
        shop_amount,
        owner_amount,
        rent,
        final_amount,
        status,
        paid_at,
    ) = raw_row[:12]
    return SettlementRow(
        settlement_id=str(settlement_id),
        period=str(period),
        owner_id=str(owner_id),
        owner_number=str(owner_number) if owner_number is not None else "",
        owner_name=str(owner_name) if owner_name is not None else "",
        total_sales=_as_int(total_sales),
        shop_amount=_as_int(shop_amount),
        owner_amount=_as_int(owner_amount),
        rent=_as_int(rent),
        final_amount=_as_int(final_amount),
        status=str(status),
        paid_at=_optional_str(paid_at),
    )


def serialize_notification(record: NotificationRow) -> list[object]:
    return [
        record.notification_id,
        record.kind,
        record.message,
        record.target_type,
        record.target_id,
        record.is_read,
        record.created_at,
    ]


def deserialize_notification(raw_row: Sequence[object]) -> NotificationRow:
    notification_id, kind, message, target_type, target_id, is_read, created_at = raw_row[:7]
    return NotificationRow(
        notification_id=str(notification_id),
        kind=str(kind),
        message=str(message) if message is not None else "",
        target_type=str(target_type),
        target_id=_optional_str(target_id),
        is_read=bool(is_read),
        created_at=str(created_at),
    )


_SERIALIZERS: Mapping[SheetName, Callable[[Any], list[object]]] = {
    SheetName.BRANCHES: serialize_branch,
    SheetName.SHELVES: serialize_shelf,
    SheetName.OWNERS: serialize_owner,
    SheetName.BOOKS: serialize_book,
    SheetName.GOODS: serialize_goods,
    SheetName.SALES: serialize_sale,
    SheetName.SETTLEMENTS: serialize_settlement,
    SheetName.NOTIFICATIONS: serialize_notification,
}

_DESERIALIZERS: Mapping[SheetName, Callable[[Sequence[object]], Any]] = {
    SheetName.BRANCHES: deserialize_branch,
    SheetName.SHELVES: deserialize_shelf,
    SheetName.OWNERS: deserialize_owner,
    SheetName.BOOKS: deserialize_book,
    SheetName.GOODS: deserialize_goods,
    SheetName.SALES: deserialize_sale,
    SheetName.SETTLEMENTS: deserialize_settlement,
    SheetName.NOTIFICATIONS: deserialize_notification,
}
