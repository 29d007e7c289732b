"""In-memory shopping cart owned by a single session.

The cart only accumulates intent: it never checks stock and never touches
the workbook. Stock pre-validation happens in
:func:`fers.core_logic.add_to_cart` before an entry reaches the cart.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, List

from .data_manager import InventoryItemRow


@dataclass
class CartEntry:
    """One catalog item and the quantity the customer wants of it."""

    item: InventoryItemRow
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        # zero and negative quantities are computed as given
        return self.item.price * self.quantity


class Cart:
    """Ordered collection of :class:`CartEntry` objects keyed by item id."""

    def __init__(self) -> None:
        self._entries: List[CartEntry] = []

    def add(self, item: InventoryItemRow, quantity: int) -> CartEntry:
        """Add ``quantity`` of ``item``, merging with an existing entry for the same id."""

        for entry in self._entries:
            if entry.item.item_id == item.item_id:
                entry.quantity += quantity
                return entry
        entry = CartEntry(item=item, quantity=quantity)
        self._entries.append(entry)
        return entry

    def remove(self, item_id: int) -> None:
        """Drop the whole entry for ``item_id`` regardless of its quantity."""

        self._entries = [entry for entry in self._entries if entry.item.item_id != item_id]

    def total(self) -> Decimal:
        return sum((entry.subtotal for entry in self._entries), Decimal("0"))

    def clear(self) -> None:
        self._entries.clear()

    @property
    def entries(self) -> List[CartEntry]:
        return list(self._entries)

    def __iter__(self) -> Iterator[CartEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)


def subtotal(entry: CartEntry) -> Decimal:
    """Return ``entry.item.price * entry.quantity``."""

    return entry.subtotal
