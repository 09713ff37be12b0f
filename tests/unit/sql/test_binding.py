from __future__ import annotations

from dataclasses import dataclass

import pytest
from pydantic import BaseModel
from rich.console import Console

from catalogdb.infrastructure.sql.binding import bind_named, bind_values, compile_named, expand_in, rebind
from catalogdb.infrastructure.sql.enums import BindVar
from catalogdb.infrastructure.sql.exceptions import BindError, QueryError

console = Console()


class Product(BaseModel):
    id: int
    name: str
    price: float


@dataclass
class ReviewRow:
    product_id: int
    rating: int


class TestCompileNamed:
    """:name placeholders become driver placeholders."""

    def test_dollar_style(self) -> None:
        console.print("[bold blue]Testing named compilation for postgres[/bold blue]")

        query, names = compile_named("UPDATE product SET name = :name WHERE id = :id", BindVar.DOLLAR)

        assert query == "UPDATE product SET name = $1 WHERE id = $2"
        assert names == ["name", "id"]

    def test_format_style(self) -> None:
        query, names = compile_named("UPDATE product SET name = :name WHERE id = :id", BindVar.FORMAT)

        assert query == "UPDATE product SET name = %s WHERE id = %s"
        assert names == ["name", "id"]

    def test_repeated_name_bound_twice(self) -> None:
        query, names = compile_named("SELECT * FROM product WHERE id = :id OR parent_id = :id", BindVar.DOLLAR)

        assert query == "SELECT * FROM product WHERE id = $1 OR parent_id = $2"
        assert names == ["id", "id"]

    def test_casts_and_literals_untouched(self) -> None:
        """Test that ::type casts and quoted text are never treated as placeholders."""
        query, names = compile_named(
            "SELECT price::numeric, ':skip' AS note, \"col:x\" FROM product WHERE id = :id",
            BindVar.DOLLAR,
        )

        assert query == "SELECT price::numeric, ':skip' AS note, \"col:x\" FROM product WHERE id = $1"
        assert names == ["id"]

    def test_format_style_doubles_literal_percent(self) -> None:
        query, names = compile_named("SELECT * FROM product WHERE name LIKE 'Mug%' AND price > :min", BindVar.FORMAT)

        assert query == "SELECT * FROM product WHERE name LIKE 'Mug%%' AND price > %s"
        assert query % ("9.5",) == "SELECT * FROM product WHERE name LIKE 'Mug%' AND price > 9.5"
        assert names == ["min"]

    def test_percent_kept_without_placeholders(self) -> None:
        query, names = compile_named("SELECT * FROM product WHERE name LIKE 'Mug%'", BindVar.FORMAT)

        assert query == "SELECT * FROM product WHERE name LIKE 'Mug%'"
        assert names == []


class TestBindNamed:
    """Values are pulled from mappings, models or plain objects."""

    def test_mapping(self) -> None:
        query, args = bind_named(
            "INSERT INTO review VALUES (:product_id, :rating)", {"product_id": 7, "rating": 5}, BindVar.DOLLAR
        )

        assert query == "INSERT INTO review VALUES ($1, $2)"
        assert args == [7, 5]

    def test_pydantic_model(self) -> None:
        product = Product(id=1, name="Mug", price=9.5)

        _, args = bind_named("UPDATE product SET price = :price WHERE id = :id", product, BindVar.DOLLAR)

        assert args == [9.5, 1]

    def test_plain_object_attributes(self) -> None:
        assert bind_values(["rating", "product_id"], ReviewRow(product_id=3, rating=4)) == [4, 3]

    def test_missing_key_raises_bind_error(self) -> None:
        with pytest.raises(BindError, match="could not find name 'rating'"):
            bind_named("INSERT INTO review VALUES (:product_id, :rating)", {"product_id": 7}, BindVar.DOLLAR)

    def test_missing_attribute_raises_bind_error(self) -> None:
        with pytest.raises(BindError, match="ReviewRow"):
            bind_values(["comment"], ReviewRow(product_id=3, rating=4))

    def test_bind_error_is_query_error(self) -> None:
        assert issubclass(BindError, QueryError)


class TestRebind:
    def test_question_marks_to_dollar(self) -> None:
        assert rebind("SELECT * FROM product WHERE id = ? AND name = ?", BindVar.DOLLAR) == (
            "SELECT * FROM product WHERE id = $1 AND name = $2"
        )

    def test_question_marks_to_format(self) -> None:
        assert rebind("SELECT * FROM product WHERE id = ?", BindVar.FORMAT) == "SELECT * FROM product WHERE id = %s"

    def test_quoted_question_mark_untouched(self) -> None:
        assert rebind("SELECT '?' FROM product WHERE id = ?", BindVar.DOLLAR) == "SELECT '?' FROM product WHERE id = $1"

    def test_format_style_doubles_literal_percent(self) -> None:
        """Test that the rebound statement survives pymysql's ``query % args``."""
        console.print("[bold blue]Testing % escaping for the format style[/bold blue]")
        query = rebind("SELECT * FROM product WHERE name LIKE 'Mug%' AND id = ? AND price % 2 = 0", BindVar.FORMAT)

        assert query == "SELECT * FROM product WHERE name LIKE 'Mug%%' AND id = %s AND price %% 2 = 0"
        assert query % ("7",) == "SELECT * FROM product WHERE name LIKE 'Mug%' AND id = 7 AND price % 2 = 0"

        console.print("[green]✓ Literal % formats back to itself[/green]")

    def test_percent_kept_without_placeholders(self) -> None:
        assert rebind("SELECT * FROM product WHERE name LIKE 'Mug%'", BindVar.FORMAT) == (
            "SELECT * FROM product WHERE name LIKE 'Mug%'"
        )

    def test_dollar_style_leaves_percent(self) -> None:
        assert rebind("SELECT * FROM product WHERE name LIKE 'Mug%' AND id = ?", BindVar.DOLLAR) == (
            "SELECT * FROM product WHERE name LIKE 'Mug%' AND id = $1"
        )


class TestExpandIn:
    def test_sequence_expanded(self) -> None:
        query, args = expand_in("SELECT * FROM product WHERE id IN (?) AND active = ?", [1, 2, 3], True)

        assert query == "SELECT * FROM product WHERE id IN (?, ?, ?) AND active = ?"
        assert args == [1, 2, 3, True]

    def test_strings_not_expanded(self) -> None:
        query, args = expand_in("SELECT * FROM product WHERE name = ?", "Mug")

        assert query == "SELECT * FROM product WHERE name = ?"
        assert args == ["Mug"]

    def test_then_rebind(self) -> None:
        query, args = expand_in("SELECT * FROM product WHERE id IN (?)", (4, 5))

        assert rebind(query, BindVar.DOLLAR) == "SELECT * FROM product WHERE id IN ($1, $2)"
        assert args == [4, 5]

    def test_empty_sequence_rejected(self) -> None:
        with pytest.raises(BindError, match="empty slice"):
            expand_in("SELECT * FROM product WHERE id IN (?)", [])

    def test_too_few_arguments(self) -> None:
        with pytest.raises(BindError, match="exceeds arguments"):
            expand_in("SELECT * FROM product WHERE id = ? AND name = ?", 1)

    def test_too_many_arguments(self) -> None:
        with pytest.raises(BindError, match="less than number arguments"):
            expand_in("SELECT * FROM product WHERE id = ?", 1, 2)
