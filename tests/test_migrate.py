"""Tests for the migration runner helpers."""

from sponsorpay.db.schema.migrate import MIGRATIONS_DIR, pending_migrations, split_statements


def test_split_keeps_dollar_quoted_bodies():
    sql = """
    -- comment; with semicolon
    CREATE TABLE a (id TEXT);
    CREATE FUNCTION f() RETURNS trigger AS $$
    BEGIN
        NEW.updated_at = now();
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
    INSERT INTO a VALUES ('x;y')
    """

    statements = split_statements(sql)

    assert len(statements) == 3
    assert statements[0] == "CREATE TABLE a (id TEXT)"
    assert "RETURN NEW;" in statements[1]
    assert statements[2] == "INSERT INTO a VALUES ('x;y')"


def test_pending_migrations_ordered(tmp_path):
    for name in ("010_later.sql", "002_second.sql", "001_first.sql", "README.sql"):
        (tmp_path / name).write_text("SELECT 1;")

    pending = pending_migrations(tmp_path, applied={1})

    assert [version for version, _ in pending] == [2, 10]
    assert pending[0][1].name == "002_second.sql"


def test_packaged_migrations_parse():
    pending = pending_migrations(MIGRATIONS_DIR, applied=set())

    assert pending[0][0] == 1
    statements = split_statements(pending[0][1].read_text(encoding="utf-8"))
    assert any("CREATE TABLE IF NOT EXISTS organizers" in s for s in statements)
    assert any("CREATE TABLE IF NOT EXISTS sponsorships" in s for s in statements)
