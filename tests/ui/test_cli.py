"""Tests for the sellermetrics command line."""

from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from sellermetrics.adapters.amazon.entities import FeeSource
from sellermetrics.core.tenant import TenantScope
from sellermetrics.ui.cli import app
from tests.fixtures.sellers import (
    create_db,
    make_order,
    make_order_item,
    make_settlement_report,
    settlement_line,
)

SELLER = TenantScope("seller-1")
ORDER_ID = "111-0000001-0000001"

runner = CliRunner()


def env_for(tmp_path: Path, **extra: str) -> dict[str, str]:
    return {"DATABASE_URL": f"sqlite:///{tmp_path / 'sellermetrics.db'}", **extra}


class TestInitDb:
    def test_creates_database_file(self, tmp_path: Path) -> None:
        # Act
        result = runner.invoke(app, ["init-db"], env=env_for(tmp_path))

        # Assert
        assert result.exit_code == 0
        assert "Initialized database" in result.stdout
        assert (tmp_path / "sellermetrics.db").exists()

    def test_invalid_configuration_exits_1(self, tmp_path: Path) -> None:
        # Act
        result = runner.invoke(
            app,
            ["init-db"],
            env=env_for(tmp_path, SELLERMETRICS_FALLBACK_FEE_RATE="2"),
        )

        # Assert
        assert result.exit_code == 1


class TestConnect:
    def test_saves_connection_with_default_marketplace(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)

        # Act
        result = runner.invoke(
            app,
            ["connect", "seller-1", "--refresh-token", "Atzr|x"],
            env=env_for(tmp_path),
        )

        # Assert
        assert result.exit_code == 0
        connection = db.get_active_connection(SELLER)
        assert connection is not None
        assert connection.marketplace_ids == "ATVPDKIKX0DER"
        assert connection.region == "na"


class TestMetrics:
    def test_json_output(self, tmp_path: Path) -> None:
        # Setup
        create_db(tmp_path)

        # Act
        result = runner.invoke(
            app,
            ["metrics", "seller-1", "--period", "last_30_days", "--json"],
            env=env_for(tmp_path),
        )

        # Assert
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["success"] is True
        assert payload["metrics"]["orders"] == 0
        assert payload["metrics"]["period"]["days"] == 30

    def test_custom_range_json(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        db.upsert_order(SELLER, make_order(ORDER_ID))
        db.upsert_order_item(SELLER, make_order_item("item-1", ORDER_ID))

        # Act
        result = runner.invoke(
            app,
            [
                "metrics",
                "seller-1",
                "--start-date",
                "2026-01-15",
                "--end-date",
                "2026-01-15",
                "--json",
            ],
            env=env_for(tmp_path),
        )

        # Assert
        assert result.exit_code == 0
        metrics = json.loads(result.stdout)["metrics"]
        assert metrics["orders"] == 1
        assert metrics["sales"] == 25.0

    def test_unknown_period_exits_2(self, tmp_path: Path) -> None:
        # Setup
        create_db(tmp_path)

        # Act
        result = runner.invoke(
            app, ["metrics", "seller-1", "--period", "fortnight"], env=env_for(tmp_path)
        )

        # Assert
        assert result.exit_code == 2

    def test_table_output(self, tmp_path: Path) -> None:
        # Setup
        create_db(tmp_path)

        # Act
        result = runner.invoke(app, ["metrics", "seller-1"], env=env_for(tmp_path))

        # Assert
        assert result.exit_code == 0
        assert "Gross profit" in result.stdout


class TestByAsin:
    def test_json_output(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        db.upsert_order(SELLER, make_order(ORDER_ID))
        db.upsert_order_item(SELLER, make_order_item("item-1", ORDER_ID))

        # Act
        result = runner.invoke(
            app,
            [
                "by-asin",
                "seller-1",
                "--start-date",
                "2026-01-01",
                "--end-date",
                "2026-01-31",
                "--json",
            ],
            env=env_for(tmp_path),
        )

        # Assert
        assert result.exit_code == 0
        asins = json.loads(result.stdout)["asins"]
        assert [(row["asin"], row["units"]) for row in asins] == [("B000TEST01", 1)]


class TestImportSettlement:
    def test_applies_report_and_refreshes_averages(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        db.upsert_order(SELLER, make_order(ORDER_ID))
        db.upsert_order_item(SELLER, make_order_item("item-1", ORDER_ID))
        report = tmp_path / "settlement.tsv"
        report.write_text(
            make_settlement_report(
                settlement_line(amount_description="Commission", amount="-3.75"),
                settlement_line(
                    amount_description="FBAPerUnitFulfillmentFee", amount="-3.22"
                ),
            ),
            encoding="utf-8",
        )

        # Act
        result = runner.invoke(
            app,
            ["import-settlement", str(report), "--user-id", "seller-1"],
            env=env_for(tmp_path),
        )

        # Assert
        assert result.exit_code == 0
        assert "1 items matched" in result.stdout
        item = db.list_items(SELLER)[0]
        assert item.fee_source is FeeSource.SETTLEMENT_REPORT
        assert db.list_products(SELLER)[0].asin == "B000TEST01"


class TestCompare:
    def test_requires_a_reference_number(self, tmp_path: Path) -> None:
        # Setup
        create_db(tmp_path)

        # Act
        result = runner.invoke(app, ["compare", "seller-1"], env=env_for(tmp_path))

        # Assert
        assert result.exit_code == 2

    def test_prints_gap_table(self, tmp_path: Path) -> None:
        # Setup
        create_db(tmp_path)

        # Act
        result = runner.invoke(
            app,
            ["compare", "seller-1", "--orders", "4", "--sales", "100"],
            env=env_for(tmp_path),
        )

        # Assert
        assert result.exit_code == 0
        assert "Gap analysis" in result.stdout
        assert "-100.00" in result.stdout
