from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import has_many, has_one, via, via_table


class Base(orm.DeclarativeBase):
    pass


article_tags = sa.Table(
    "article_tags",
    Base.metadata,
    sa.Column("article_id", sa.Integer, sa.ForeignKey("articles.id"), primary_key=True),
    sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id"), primary_key=True),
)


class Author(Base):
    __tablename__ = "authors"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    articles = has_many("Article", {"id": "author_id"}, inverse_of="author", order_by=("-published",))
    drafts = has_many("Article", {"id": "author_id"}, where=lambda t: t.c.published.is_(None))


class Article(Base):
    __tablename__ = "articles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    published: orm.Mapped[int | None] = orm.mapped_column(nullable=True)
    author_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("authors.id"))

    author = has_one("Author", {"author_id": "id"})
    comments = has_many("Comment", {"id": "article_id"}, order_by=("id",))
    commenters = has_many("Reader", {"reader_id": "id"}, via=via("comments"))
    tags = has_many("Tag", {"tag_id": "id"}, via=via_table(article_tags, {"id": "article_id"}))


class Reader(Base):
    __tablename__ = "readers"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))


class Comment(Base):
    __tablename__ = "comments"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    text: orm.Mapped[str] = orm.mapped_column(sa.Text)
    article_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("articles.id"))
    reader_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("readers.id"))

    reader = has_one("Reader", {"reader_id": "id"})


class Tag(Base):
    __tablename__ = "tags"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))
