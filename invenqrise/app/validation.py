from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _strip(v):
    if v is None:
        return v
    return str(v).strip()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


_LOCATION_ALIASES = {
    "foh": "front-of-house",
    "front": "front-of-house",
    "front_of_house": "front-of-house",
    "boh": "back-of-house",
    "back": "back-of-house",
    "back_of_house": "back-of-house",
}


def _to_location(v):
    if v is None:
        return v
    s = str(v).strip().lower()
    return _LOCATION_ALIASES.get(s, s)


_ROLE_BY_KEY = {
    "owner": "Owner",
    "admin": "Admin",
    "inventory manager": "Inventory Manager",
    "inventory_manager": "Inventory Manager",
    "marketing manager": "Marketing Manager",
    "marketing_manager": "Marketing Manager",
    "stock keeper": "Stock Keeper",
    "stock_keeper": "Stock Keeper",
}


def _to_role(v):
    if v is None:
        return v
    key = " ".join(str(v).strip().lower().split())
    return _ROLE_BY_KEY.get(key, str(v).strip())


Role = Annotated[
    Literal["Owner", "Admin", "Inventory Manager", "Marketing Manager", "Stock Keeper"],
    BeforeValidator(_to_role),
]
AssignableRole = Annotated[
    Literal["Admin", "Inventory Manager", "Marketing Manager", "Stock Keeper"],
    BeforeValidator(_to_role),
]

# Stock is tracked in two sections per store.
StockLocation = Annotated[Literal["front-of-house", "back-of-house"], BeforeValidator(_to_location)]

TransferStatus = Literal["Pending Approval", "In Transit", "Completed"]
CampaignStatus = Literal["Active", "Upcoming", "Finished"]
ExpiryStatus = Literal["none", "expired", "expiring_soon", "valid"]

Email = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
]

PersonName = Annotated[str, BeforeValidator(_strip), StringConstraints(min_length=2, max_length=120)]
ProductName = Annotated[str, BeforeValidator(_strip), StringConstraints(min_length=2, max_length=200)]
CampaignName = Annotated[str, BeforeValidator(_strip), StringConstraints(min_length=3, max_length=200)]
CategoryName = Annotated[str, BeforeValidator(_strip), StringConstraints(min_length=2, max_length=80)]
Password = Annotated[str, StringConstraints(min_length=6, max_length=128)]

# Phone numbers keep their formatting; only the length is checked.
Phone = Annotated[str, BeforeValidator(_strip), StringConstraints(min_length=10, max_length=32)]
City = Annotated[str, BeforeValidator(_strip), StringConstraints(min_length=2, max_length=80)]

# Store codes are short stable identifiers ("Online", "Downtown").
StoreCode = Annotated[
    str,
    BeforeValidator(_strip),
    StringConstraints(min_length=1, max_length=40, pattern=r"^[A-Za-z0-9][A-Za-z0-9 _-]*$"),
]
