from __future__ import annotations

from typing import Any

import pytest

from sqla_relations import ConnectionExecutor, RelationResolver, add_conditions

from ..models import Category, Customer, Department, Employee, Item, Order, Tag, Wishlist


def _ids(records: Any) -> list[Any]:
    return [record.id for record in records]


@pytest.fixture
def customers(resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> list[Customer]:
    return resolver.find(Customer, order_by=("id",))  # type: ignore[return-value]


@pytest.fixture
def orders(resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> list[Order]:
    return resolver.find(Order, order_by=("id",))  # type: ignore[return-value]


class TestHasMany:
    def test_basic(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, "orders")
        alice, bob, carol = customers

        assert sorted(_ids(alice.orders)) == [1, 2]
        assert _ids(bob.orders) == [3]
        assert carol.orders == []

    def test_one_query_for_all_owners(
        self, resolver: RelationResolver, executor: ConnectionExecutor, customers: list[Customer]
    ) -> None:
        before = executor.statements
        resolver.resolve(customers, "orders")

        assert executor.statements - before == 1

    def test_empty_result_is_populated(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        carol = customers[2]
        resolver.resolve([carol], "orders")

        assert resolver.is_populated(carol, "orders")
        assert carol.orders == []

    def test_order_by_declared_on_relation(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, "orders_desc")

        assert _ids(customers[0].orders_desc) == [2, 1]

    def test_where_declared_on_relation(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, "expensive_orders")

        assert [_ids(c.expensive_orders) for c in customers] == [[2], [3], []]

    def test_index_by(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, "orders_by_id")
        alice = customers[0]

        assert sorted(alice.orders_by_id) == [1, 2]
        assert alice.orders_by_id[2].total == 150
        assert customers[2].orders_by_id == {}

    def test_composite_key(self, resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> None:
        departments = resolver.find(Department, order_by=("company_id", "code"))
        resolver.resolve(departments, "employees")

        assert [(d.company_id, d.code, _ids(d.employees)) for d in departments] == [
            (1, "ENG", [1, 6]),
            (1, "OPS", [2]),
            (2, "ENG", [3]),
        ]

    def test_array_valued_owner_key(self, resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> None:
        wishlists = resolver.find(Wishlist, order_by=("id",))
        resolver.resolve(wishlists, "items")

        assert [_ids(w.items) for w in wishlists] == [[2, 5, 1], [], []]


class TestHasOne:
    def test_basic(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, "customer")

        assert [o.customer.name if o.customer else None for o in orders] == ["alice", "alice", "bob", None]

    def test_shared_target_is_same_record(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, "customer")

        assert orders[0].customer is orders[1].customer

    def test_null_keys_issue_no_query(
        self, resolver: RelationResolver, executor: ConnectionExecutor, orders: list[Order]
    ) -> None:
        orphan = orders[3]
        before = executor.statements
        resolver.resolve([orphan], "customer")

        assert executor.statements == before
        assert resolver.is_populated(orphan, "customer")
        assert orphan.customer is None

    def test_composite_key_with_nulls(self, resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> None:
        employees = resolver.find(Employee, order_by=("id",))
        resolver.resolve(employees, "department")

        assert [e.department.name if e.department else None for e in employees] == [
            "Engineering",
            "Operations",
            "Engineering 2",
            None,
            None,
            "Engineering",
        ]

    def test_without_match(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, "profile")

        assert customers[0].profile.bio == "Alice bio"
        assert customers[1].profile is None


class TestVia:
    def test_follows_junction_order(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, "items")

        assert [_ids(o.items) for o in orders] == [[5, 3, 4], [1], [2, 3], []]

    def test_populates_junction_relation(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, "items")

        assert resolver.is_populated(orders[0], "order_items")
        assert [oi.item_id for oi in orders[0].order_items] == [5, 3, 4]

    def test_two_queries(
        self, resolver: RelationResolver, executor: ConnectionExecutor, orders: list[Order]
    ) -> None:
        before = executor.statements
        resolver.resolve(orders, "items")

        assert executor.statements - before == 2

    def test_reuses_populated_junction(
        self, resolver: RelationResolver, executor: ConnectionExecutor, orders: list[Order]
    ) -> None:
        resolver.resolve(orders, "order_items")
        before = executor.statements
        resolver.resolve(orders, "items")

        assert executor.statements - before == 1
        assert _ids(orders[0].items) == [5, 3, 4]

    def test_filtered_junction_is_not_cached(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, "bulk_items")

        assert [_ids(o.bulk_items) for o in orders] == [[3], [1], [], []]
        assert not resolver.is_populated(orders[0], "order_items")

    def test_pivot_table(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, "tags")

        assert [sorted(t.name for t in o.tags) for o in orders] == [["gift", "rush"], [], ["gift"], []]

    def test_pivot_table_reverse(self, resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> None:
        tags = resolver.find(Tag, order_by=("id",))
        resolver.resolve(tags, "orders")

        assert [sorted(_ids(t.orders)) for t in tags] == [[1, 3], [1]]


class TestNested:
    def test_two_levels(
        self, resolver: RelationResolver, executor: ConnectionExecutor, customers: list[Customer]
    ) -> None:
        before = executor.statements
        resolver.resolve(customers, "orders.items")
        alice = customers[0]
        first = next(o for o in alice.orders if o.id == 1)

        assert executor.statements - before == 3
        assert _ids(first.items) == [5, 3, 4]

    def test_query_count_does_not_grow_with_owners(
        self, resolver: RelationResolver, executor: ConnectionExecutor, orders: list[Order]
    ) -> None:
        before = executor.statements
        resolver.resolve(orders[:1], "items.category")
        single = executor.statements - before

        before = executor.statements
        resolver.resolve(orders, "items.category")

        assert executor.statements - before == single == 3

    def test_merged_paths(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, ("customer.profile", "customer", "items.category"))
        first = orders[0]

        assert first.customer.profile.bio == "Alice bio"
        assert [i.category.name for i in first.items] == ["toys", "toys", "toys"]

    def test_shared_targets_resolved_once(self, resolver: RelationResolver, orders: list[Order]) -> None:
        resolver.resolve(orders, "items.category")
        robot_in_order_1 = orders[0].items[1]
        robot_in_order_3 = orders[2].items[1]

        assert robot_in_order_1.id == robot_in_order_3.id == 3
        assert robot_in_order_1.category.name == robot_in_order_3.category.name == "toys"


class TestCustomization:
    def test_on_last_segment_only(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, {"orders.items": add_conditions(Item.price > 40)})
        alice = customers[0]

        assert sorted(_ids(alice.orders)) == [1, 2]
        assert [_ids(o.items) for o in sorted(alice.orders, key=lambda o: o.id)] == [[3], []]

    def test_pairs(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, [("orders", add_conditions(Order.total < 100))])

        assert [_ids(c.orders) for c in customers] == [[1], [], []]


class TestInverse:
    def test_many_sets_owner_on_targets(
        self, resolver: RelationResolver, executor: ConnectionExecutor, customers: list[Customer]
    ) -> None:
        resolver.resolve(customers, "orders")
        alice = customers[0]
        before = executor.statements

        assert all(order.customer is alice for order in alice.orders)
        assert executor.statements == before

    def test_one_sets_owner_on_target(self, resolver: RelationResolver, customers: list[Customer]) -> None:
        resolver.resolve(customers, "profile")
        alice = customers[0]

        assert alice.profile.customer is alice

    def test_category_items(self, resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> None:
        categories = resolver.find(Category, order_by=("id",))
        resolver.resolve(categories, "items")

        assert [sorted(_ids(c.items)) for c in categories] == [[1, 2], [3, 4, 5], []]
        assert all(item.category is categories[1] for item in categories[1].items)


class TestPlainRows:
    def test_as_array(self, resolver: RelationResolver, seed_data: dict[str, list[Any]]) -> None:
        customers = resolver.find(Customer, order_by=("id",), as_array=True)
        resolver.resolve(customers, "orders", model=Customer, as_array=True)
        alice = customers[0]

        assert isinstance(alice, dict)
        assert sorted(o["id"] for o in alice["orders"]) == [1, 2]
        assert all(isinstance(o, dict) for o in alice["orders"])
        assert alice["orders"][0]["customer"] is alice

    def test_model_required(self, resolver: RelationResolver) -> None:
        with pytest.raises(TypeError, match="needs `model`"):
            resolver.resolve([{"id": 1}], "orders")

    def test_no_owners_no_query(self, resolver: RelationResolver, executor: ConnectionExecutor) -> None:
        resolver.resolve([], "orders")

        assert executor.statements == 0
