"""
Tests for the HTTP API.
"""
from dataclasses import replace
from decimal import Decimal

from test_ingestion_service import BUYS, DIVIDENDS, OVERSELL, SELL

USER = {"X-User-Id": "1"}


def upload(client, content, filename="trades.csv", headers=USER):
    return client.post(
        "/upload",
        files={"file": (filename, content.encode("utf-8"), "text/csv")},
        headers=headers,
    )


class TestInfoEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "Taxfolio"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


class TestUpload:
    """POST /upload"""

    def test_upload(self, client):
        response = upload(client, BUYS)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["broker_format"] == "taxfolio_csv"
        assert body["rows_stored"] == 3
        assert body["transaction_count"] == 3

    def test_duplicate_upload(self, client):
        upload(client, BUYS)
        body = upload(client, BUYS).json()
        assert body["rows_stored"] == 0
        assert body["duplicates_skipped"] == 3

    def test_missing_user_header(self, client):
        assert upload(client, BUYS, headers={}).status_code == 422

    def test_invalid_user_header(self, client):
        assert upload(client, BUYS, headers={"X-User-Id": "abc"}).status_code == 400
        assert upload(client, BUYS, headers={"X-User-Id": "0"}).status_code == 400

    def test_unknown_format(self, client):
        response = upload(client, "a,b,c\n1,2,3\n", filename="other.csv")
        assert response.status_code == 400
        assert response.json()["category"] == "user"

    def test_malformed_rows_listed(self, client):
        content = "date,kind,isin,currency\nbad,dividend,US0378331005,USD\n"
        response = upload(client, content)
        assert response.status_code == 400
        assert response.json()["issues"] == ["line 2: invalid date 'bad'"]

    def test_oversell_is_processing_error(self, client):
        upload(client, BUYS)
        response = upload(client, OVERSELL)
        assert response.status_code == 422
        assert response.json()["category"] == "processing"

    def test_too_large(self, client, upload_service):
        upload_service.settings = replace(upload_service.settings, max_upload_size_bytes=16)
        assert upload(client, BUYS).status_code == 400


class TestReports:
    """GET endpoints after uploads."""

    def test_no_data(self, client):
        response = client.get("/realizedgains", headers=USER)
        assert response.status_code == 404
        assert response.json()["category"] == "empty"

    def test_realized_gains(self, client):
        upload(client, BUYS)
        upload(client, SELL)
        body = client.get("/realizedgains", headers=USER).json()
        assert len(body["stock_sales"]) == 2
        assert len(body["stock_holdings"]) == 1
        assert body["transaction_count"] == 4

    def test_stock_endpoints(self, client):
        upload(client, BUYS)
        upload(client, SELL)
        sales = client.get("/stocks/sales", headers=USER).json()
        assert Decimal(sales[0]["close_amount_eur"]) == Decimal("1500.00")
        holdings = client.get("/stocks/holdings", headers=USER).json()
        assert Decimal(holdings[0]["quantity"]) == Decimal("3")
        grouped = client.get("/stocks/holdings", params={"grouped": True}, headers=USER).json()
        assert grouped[0]["lots"] == 1

    def test_yearly(self, client):
        upload(client, BUYS)
        upload(client, SELL)
        body = client.get("/realizedgains/yearly", headers=USER).json()
        assert [entry["year"] for entry in body["stocks"]] == [2024]
        assert body["options"] == []

    def test_options_empty(self, client):
        upload(client, BUYS)
        assert client.get("/options/sales", headers=USER).json() == []
        assert client.get("/options/holdings", headers=USER).json() == []

    def test_dividends(self, client):
        upload(client, DIVIDENDS)
        summary = client.get("/dividends/tax-summary", headers=USER).json()
        assert Decimal(summary["2024"]["US"]["taxed_amt"]) == Decimal("0.33")
        events = client.get("/dividends/transactions", headers=USER).json()
        assert len(events) == 1

    def test_fees_and_cash(self, client):
        upload(client, BUYS)
        fees = client.get("/fees", headers=USER).json()
        assert {fee["category"] for fee in fees} == {"Trade Commission"}
        assert all(Decimal(fee["amount_eur"]) < 0 for fee in fees)
        cash = client.get("/cash-movements", headers=USER).json()
        assert cash[0]["type"] == "deposit"


class TestStoredTransactions:
    """Processed transactions and the data check."""

    def test_processed_newest_first(self, client):
        upload(client, BUYS)
        upload(client, SELL)
        body = client.get("/transactions/processed", headers=USER).json()
        assert len(body) == 4
        assert body[0]["side"] == "sell"
        assert body[0]["kind"] == "stock"
        assert Decimal(body[0]["amount_eur"]) == Decimal("1800.00")
        assert body[-1]["timestamp"].startswith("2024-01-05")

    def test_processed_without_data(self, client):
        assert client.get("/transactions/processed", headers=USER).json() == []

    def test_has_data(self, client):
        assert client.get("/user/has-data", headers=USER).json() == {"has_data": False}
        upload(client, BUYS)
        assert client.get("/user/has-data", headers=USER).json() == {"has_data": True}


class TestDelete:
    def test_delete_transactions(self, client):
        upload(client, BUYS)
        response = client.delete("/transactions", headers=USER)
        assert response.json() == {"success": True, "transactions_deleted": 3}
        assert client.get("/realizedgains", headers=USER).status_code == 404

    def test_delete_without_data(self, client):
        response = client.delete("/transactions", headers={"X-User-Id": "9"})
        assert response.json()["transactions_deleted"] == 0
