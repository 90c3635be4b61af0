"""Basic sqla-relations usage examples.

Demonstrates registry setup, eager loading with dotted paths, lazy access,
per-path conditions, SQL joins and invalidation after a key change.

NOTE: This file is illustrative, it needs seeded data to print anything
interesting.
"""

from __future__ import annotations

import logging

import sqlalchemy as sa

from sqla_relations import (
    ConnectionExecutor,
    JoinRequest,
    RelationResolver,
    add_conditions,
    get_registry,
    resolve_col,
)

from .models import Article, Author, Base, Comment


# ── 1. Build the registry once at startup ────────────────────────────

engine = sa.create_engine("sqlite:///:memory:")
registry = get_registry(Base)


def setup() -> None:
    Base.metadata.create_all(engine)
    logging.getLogger("sqla_relations").setLevel(logging.DEBUG)


# ── 2. Eager loading: one query per relation level ───────────────────


def authors_with_articles(conn: sa.Connection) -> list[Author]:
    resolver = RelationResolver(ConnectionExecutor(conn), registry)
    return resolver.find(Author, with_=("articles.comments.reader", "articles.tags"))  # type: ignore[return-value]


# ── 3. Lazy access: unloaded relations query on first read ───────────


def first_commenter(conn: sa.Connection) -> str | None:
    resolver = RelationResolver(ConnectionExecutor(conn), registry)
    article = resolver.find_one(Article, order_by=("id",))
    if article is None or not article.commenters:
        return None

    return article.commenters[0].name


# ── 4. Conditions on one path ────────────────────────────────────────


def authors_with_recent_articles(conn: sa.Connection) -> list[Author]:
    resolver = RelationResolver(ConnectionExecutor(conn), registry)
    return resolver.find(  # type: ignore[return-value]
        Author,
        with_={"articles": add_conditions(Article.published > 2020)},
    )


# ── 5. SQL joins: filter on a relation, assemble another ─────────────


def authors_with_comments(conn: sa.Connection) -> list[Author]:
    resolver = RelationResolver(ConnectionExecutor(conn), registry)
    return resolver.find(  # type: ignore[return-value]
        Author,
        join_with=(
            JoinRequest("articles.comments", kind="inner", eager=False),
            "drafts",
        ),
        customize=lambda q: q.where(resolve_col(q, "articles_comments.text").contains("great")),
        distinct=True,
    )


# ── 6. Changing a link attribute drops dependent relations ───────────


def reassign_comment(conn: sa.Connection, comment: Comment, reader_id: int) -> str:
    resolver = RelationResolver(ConnectionExecutor(conn), registry)
    resolver.bind(comment)
    comment.reader  # noqa: B018

    # drops the cached reader, the next read queries with the new key
    comment.reader_id = reader_id
    return comment.reader.name


if __name__ == "__main__":
    setup()
    with engine.connect() as conn:
        for author in authors_with_articles(conn):
            print(author.name, [a.title for a in author.articles])
