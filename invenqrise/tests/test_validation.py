import pytest
from pydantic import BaseModel, ValidationError

from invenqrise.app.validation import AssignableRole, Email, Phone, ProductName, Role, StockLocation, StoreCode


class _M(BaseModel):
    location: StockLocation


class _Person(BaseModel):
    email: Email
    phone: Phone


class _Member(BaseModel):
    role: Role


class _Invite(BaseModel):
    role: AssignableRole


class _Product(BaseModel):
    name: ProductName


class _Store(BaseModel):
    code: StoreCode


def test_stock_location_accepts_short_aliases():
    assert _M(location="FOH").location == "front-of-house"
    assert _M(location="back").location == "back-of-house"
    assert _M(location="front-of-house").location == "front-of-house"


def test_stock_location_rejects_unknown():
    with pytest.raises(ValidationError):
        _M(location="warehouse")


def test_email_is_normalized():
    p = _Person(email="  Jane@Example.COM ", phone="5551234567")
    assert p.email == "jane@example.com"


def test_short_phone_rejected():
    with pytest.raises(ValidationError):
        _Person(email="a@b.co", phone="12345")


def test_role_names_are_normalized():
    assert _Member(role="stock_keeper").role == "Stock Keeper"
    assert _Member(role="  inventory   manager ").role == "Inventory Manager"


def test_owner_is_not_assignable():
    assert _Member(role="owner").role == "Owner"
    with pytest.raises(ValidationError):
        _Invite(role="Owner")


def test_product_name_min_length():
    with pytest.raises(ValidationError):
        _Product(name=" a ")
    assert _Product(name="  Milk ").name == "Milk"


def test_store_code_pattern():
    assert _Store(code="Downtown").code == "Downtown"
    with pytest.raises(ValidationError):
        _Store(code="-bad")
