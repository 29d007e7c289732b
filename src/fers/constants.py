"""Enumerations shared across the FERS shop modules.

The data access layer, the business rules and the command-line shell all
read their status codes, roles and sheet names from here so the workbook
never holds a value one layer would not recognise.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version expected by every layer.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class AccountRole(str, Enum):
    """Roles an account is created with. Roles never change afterwards."""

    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"


class TransactionStatus(str, Enum):
    """Lifecycle states of a customer order."""

    CREATED = "CREATED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    DELIVERED = "DELIVERED"


class PaymentMethod(str, Enum):
    """Payment channels a customer may pick at checkout."""

    ONLINE = "ONLINE"
    CARD = "CARD"
    COD = "COD"


class PaymentStatus(str, Enum):
    """States of the simulated payment attached to an order."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class SheetName(str, Enum):
    """Worksheet names managed by the data access layer."""

    ACCOUNTS = "Accounts"
    INVENTORY_ITEMS = "InventoryItems"
    TRANSACTIONS = "Transactions"
    LINE_ITEMS = "LineItems"
    PAYMENTS = "Payments"
    SEQUENCES = "Sequences"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "AccountRole",
    "TransactionStatus",
    "PaymentMethod",
    "PaymentStatus",
    "SheetName",
]
