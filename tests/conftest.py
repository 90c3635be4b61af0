from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import (
    ConnectionExecutor,
    RelationRegistry,
    RelationResolver,
    get_registry,
    relations_cache_clear,
)

from .models import (
    Base,
    Category,
    Customer,
    Department,
    Employee,
    Item,
    Order,
    OrderItem,
    Profile,
    Tag,
    Wishlist,
    order_tags,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest", driver="psycopg")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+psycopg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> Iterator[sa.Engine]:
    eng = sa.create_engine(db_config, echo=False)
    yield eng
    eng.dispose()


@pytest.fixture(scope="session")
def _create_tables(engine: sa.Engine) -> Iterator[None]:
    with engine.begin() as conn:
        Base.metadata.create_all(conn)
    yield
    with engine.begin() as conn:
        Base.metadata.drop_all(conn)


@pytest.fixture
def connection(engine: sa.Engine, _create_tables: None) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def session(connection: sa.Connection) -> Iterator[orm.Session]:
    sess = orm.Session(bind=connection, expire_on_commit=False)
    yield sess
    sess.close()


@pytest.fixture(scope="session")
def registry() -> RelationRegistry:
    """Relation registry of the test models.

    Sync, no DB needed -- safe to use from unit tests.
    """
    return get_registry(Base)


@pytest.fixture
def executor(connection: sa.Connection) -> ConnectionExecutor:
    return ConnectionExecutor(connection)


@pytest.fixture
def resolver(executor: ConnectionExecutor, registry: RelationRegistry) -> RelationResolver:
    return RelationResolver(executor, registry)


@pytest.fixture
def seed_data(session: orm.Session) -> dict[str, list[Any]]:
    alice = Customer(id=1, name="alice", status="active")
    bob = Customer(id=2, name="bob", status="active")
    carol = Customer(id=3, name="carol", status="inactive")
    session.add_all([alice, bob, carol])
    session.flush()

    session.add_all([Profile(id=1, customer_id=1, bio="Alice bio")])

    books = Category(id=1, name="books")
    toys = Category(id=2, name="toys")
    empty = Category(id=3, name="empty")
    session.add_all([books, toys, empty])
    session.flush()

    items = [
        Item(id=1, name="novel", price=20, category_id=1),
        Item(id=2, name="atlas", price=80, category_id=1),
        Item(id=3, name="robot", price=45, category_id=2),
        Item(id=4, name="kite", price=15, category_id=2),
        Item(id=5, name="puzzle", price=30, category_id=2),
    ]
    session.add_all(items)
    session.flush()

    orders = [
        Order(id=1, customer_id=1, total=50),
        Order(id=2, customer_id=1, total=150),
        Order(id=3, customer_id=2, total=300),
        Order(id=4, customer_id=None, total=10),
    ]
    session.add_all(orders)
    session.flush()

    # order 1 lists its items as 5, 3, 4
    session.add_all([
        OrderItem(order_id=1, item_id=5, position=1, quantity=1),
        OrderItem(order_id=1, item_id=3, position=2, quantity=2),
        OrderItem(order_id=1, item_id=4, position=3, quantity=1),
        OrderItem(order_id=2, item_id=1, position=1, quantity=3),
        OrderItem(order_id=3, item_id=2, position=1, quantity=1),
        OrderItem(order_id=3, item_id=3, position=2, quantity=1),
    ])
    session.flush()

    gift = Tag(id=1, name="gift")
    rush = Tag(id=2, name="rush")
    session.add_all([gift, rush])
    session.flush()

    session.execute(
        order_tags.insert().values([
            {"order_id": 1, "tag_id": 2},
            {"order_id": 1, "tag_id": 1},
            {"order_id": 3, "tag_id": 1},
        ])
    )

    session.add_all([
        Department(company_id=1, code="ENG", name="Engineering"),
        Department(company_id=1, code="OPS", name="Operations"),
        Department(company_id=2, code="ENG", name="Engineering 2"),
    ])
    session.add_all([
        Employee(id=1, name="ann", company_id=1, department_code="ENG"),
        Employee(id=2, name="ben", company_id=1, department_code="OPS"),
        Employee(id=3, name="cid", company_id=2, department_code="ENG"),
        Employee(id=4, name="dot", company_id=2, department_code="OPS"),
        Employee(id=5, name="eve", company_id=None, department_code="ENG"),
        Employee(id=6, name="fay", company_id=1, department_code="ENG"),
    ])

    session.add_all([
        Wishlist(id=1, item_ids=[2, 5, 1]),
        Wishlist(id=2, item_ids=[]),
        Wishlist(id=3, item_ids=None),
    ])
    session.flush()

    session.expunge_all()

    return {
        "customers": [alice, bob, carol],
        "categories": [books, toys, empty],
        "items": items,
        "orders": orders,
        "tags": [gift, rush],
    }


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    relations_cache_clear()
