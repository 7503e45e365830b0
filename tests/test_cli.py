"""Tests for the command-line interface."""

import json

import pytest

from orderflow.cli import main


@pytest.fixture
def db_args(temp_dir, monkeypatch):
    """Global CLI arguments pointing at a temporary database."""
    monkeypatch.delenv("ORDERFLOW_DATABASE_URL", raising=False)
    return ["--database-url", f"sqlite:///{temp_dir / 'cli.db'}"]


def add_product(db_args, capsys, *extra):
    assert main(db_args + ["add-product", "Mug", "12.50", "--stock", "4", *extra]) == 0
    out = capsys.readouterr().out
    line = next(l for l in out.splitlines() if l.startswith("Added product: "))
    return line.split(": ", 1)[1]


class TestCLI:
    """Tests for CLI commands."""

    def test_init_db(self, db_args, temp_dir, capsys):
        assert main(db_args + ["init-db"]) == 0

        assert "Initialized database" in capsys.readouterr().out
        assert (temp_dir / "cli.db").exists()

    def test_add_and_list_products(self, db_args, capsys):
        product_id = add_product(db_args, capsys)

        assert main(db_args + ["products", "--json"]) == 0
        products = json.loads(capsys.readouterr().out)

        assert products[0]["id"] == product_id
        assert products[0]["price"] == "12.50"
        assert products[0]["stock"] == 4

    def test_inactive_products_hidden(self, db_args, capsys):
        add_product(db_args, capsys, "--inactive")

        assert main(db_args + ["products"]) == 0
        assert "No products found." in capsys.readouterr().out

        assert main(db_args + ["products", "--all"]) == 0
        assert "(inactive)" in capsys.readouterr().out

    def test_add_product_invalid_price(self, db_args, capsys):
        assert main(db_args + ["add-product", "Mug", "abc"]) == 1
        assert "invalid price" in capsys.readouterr().err

        assert main(db_args + ["add-product", "Mug", "0"]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_stock(self, db_args, capsys):
        product_id = add_product(db_args, capsys)

        assert main(db_args + ["stock", product_id, "--set", "9"]) == 0
        assert "stock=9" in capsys.readouterr().out

        assert main(db_args + ["stock", product_id]) == 0
        assert "stock=9" in capsys.readouterr().out

    def test_stock_unknown_product(self, db_args, capsys):
        assert main(db_args + ["stock", "missing"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_run_jobs_with_nothing_due(self, db_args, capsys):
        assert main(db_args + ["run-jobs"]) == 0
        assert "Ran 0 job(s), 0 failed" in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()
