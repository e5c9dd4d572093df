import pytest

from services.payments.models import (
    PurchaseItem, is_completed, normalize_purchase_items, resolve_status, stored_purchase_items,
)


@pytest.mark.parametrize("stored, incoming, expected", [
    ("Initiated", "Completed", "Completed"),
    ("Initiated", "Pending", "Pending"),
    ("Completed", "Pending", "Completed"),
    ("Completed", "Initiated", "Completed"),
    ("Cancelled", "Unknown", "Cancelled"),
    (" expired ", "pending", " expired "),
    ("Pending", "Expired", "Expired"),
    ("Completed", "Refunded", "Refunded"),
    ("Initiated", None, "Unknown"),
    ("Failed", None, "Failed"),
])
def test_resolve_status(stored, incoming, expected):
    assert resolve_status(stored, incoming) == expected


def test_is_completed_ignores_case_and_whitespace():
    assert is_completed(" completed ")
    assert not is_completed("Pending")
    assert not is_completed(None)


def test_items_list_with_either_key_spelling():
    items = normalize_purchase_items([
        {"product_id": "a", "quantity": 2},
        {"productId": "b", "quantity": "3"},
    ])
    assert items == [PurchaseItem(product_id="a", quantity=2), PurchaseItem(product_id="b", quantity=3)]


def test_single_product_metadata():
    assert normalize_purchase_items({"productId": "a", "quantity": 1.8}) == [PurchaseItem(product_id="a", quantity=1)]


def test_metadata_items_list():
    raw = {"items": [{"productId": "a", "quantity": 1}], "productId": "ignored", "quantity": 9}
    assert normalize_purchase_items(raw) == [PurchaseItem(product_id="a", quantity=1)]


@pytest.mark.parametrize("raw", [
    None,
    "a",
    {},
    {"quantity": 2},
    [{"product_id": "", "quantity": 1}],
    [{"product_id": "a", "quantity": 0}],
    [{"product_id": "a", "quantity": -2}],
    [{"product_id": "a", "quantity": "many"}],
    [{"product_id": "a", "quantity": 0.4}],
    [{"product_id": "a", "quantity": True}],
    ["a", 1],
])
def test_unusable_entries_are_dropped(raw):
    assert normalize_purchase_items(raw) == []


def test_already_normalized_items_pass_through():
    items = [PurchaseItem(product_id="a", quantity=1)]
    assert normalize_purchase_items(items) == items


def test_stored_items_are_read_as_saved():
    doc = {"purchase_items": [{"product_id": "a", "quantity": 3}, {"product_id": "b", "quantity": 1}]}
    assert stored_purchase_items(doc) == [PurchaseItem(product_id="a", quantity=3), PurchaseItem(product_id="b", quantity=1)]
    assert stored_purchase_items({"purchase_items": None}) == []
    assert stored_purchase_items({}) == []
