import pytest

from pos_terminal.app.errors import AlreadyResumed, CartNotEmpty, HeldOrderExpired, HeldOrderNotFound, ValidationError
from pos_terminal.app.models import HoldMeta


def test_hold_clears_cart_and_resume_restores_it(terminal, scenario_cart):
    book = terminal.held_orders
    order = book.hold(HoldMeta(customer_name="Awa", notes="back in 5"))
    assert order.hold_number == "H20260302-001"
    assert order.cart.totals.total == 13000
    assert terminal.carts.current().is_empty

    cart = book.resume(order.id)
    assert [(i.product_id, i.quantity) for i in cart.items] == [("A", 2), ("B", 1)]
    assert terminal.carts.current().totals.total == 13000
    assert book.get(order.id).status == "resumed"
    assert book.list() == []


def test_resume_is_single_use(terminal, scenario_cart):
    order = terminal.held_orders.hold()
    terminal.held_orders.resume(order.id)
    terminal.carts.clear()
    with pytest.raises(AlreadyResumed):
        terminal.held_orders.resume(order.id)


def test_hold_numbers_increment_per_day(terminal, clock):
    terminal.carts.add_item(product_id="A")
    first = terminal.held_orders.hold()
    terminal.carts.add_item(product_id="B")
    second = terminal.held_orders.hold()
    assert (first.hold_number, second.hold_number) == ("H20260302-001", "H20260302-002")

    clock.advance(days=1)
    terminal.carts.add_item(product_id="C")
    assert terminal.held_orders.hold().hold_number == "H20260303-001"


def test_empty_cart_cannot_be_held(terminal):
    with pytest.raises(ValidationError):
        terminal.held_orders.hold()


def test_expired_orders_cannot_be_resumed(terminal, scenario_cart, clock):
    order = terminal.held_orders.hold()
    clock.advance(hours=25)
    assert terminal.held_orders.list() == []
    assert terminal.held_orders.list(include_inactive=True)[0].status == "expired"
    with pytest.raises(HeldOrderExpired):
        terminal.held_orders.resume(order.id)
    assert terminal.held_orders.get(order.id).status == "expired"
    assert terminal.carts.current().is_empty


def test_resume_refuses_to_overwrite_a_live_cart(terminal, scenario_cart):
    order = terminal.held_orders.hold()
    terminal.carts.add_item(product_id="C")
    with pytest.raises(CartNotEmpty):
        terminal.held_orders.resume(order.id)
    assert terminal.held_orders.get(order.id).status == "held"


def test_unknown_and_discarded_orders(terminal, scenario_cart):
    with pytest.raises(HeldOrderNotFound):
        terminal.held_orders.resume("missing")
    order = terminal.held_orders.hold()
    terminal.held_orders.discard(order.id)
    with pytest.raises(HeldOrderNotFound):
        terminal.held_orders.get(order.id)
    with pytest.raises(HeldOrderNotFound):
        terminal.held_orders.discard(order.id)


def test_holding_announces_the_cleared_cart(terminal, scenario_cart, sink):
    terminal.held_orders.hold()
    last = sink.events[-1]
    assert last.type == "cart_update"
    assert last.data["items"] == []
