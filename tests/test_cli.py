import sys
from datetime import datetime, timezone

import pytest

import main
from storage.models import PersistedOpportunity


def _record(status="active"):
    seen = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    return PersistedOpportunity(
        opportunity_key="BTC/USDT-binance-kucoin",
        symbol="BTC/USDT",
        buy_source="binance",
        sell_source="kucoin",
        buy_price=42000.0,
        sell_price=43100.0,
        gross_spread_pct=2.62,
        total_cost_pct=0.3,
        net_profit_pct=2.32,
        trade_amount=0.1,
        trade_notional=4200.0,
        expected_profit=97.44,
        liquidity_score=72.0,
        confidence_score=81,
        risk_tier="Low",
        peak_profit_pct=2.9,
        status=status,
        first_detected_at=seen,
        last_seen_at=seen,
        cleared_at=None,
        alert_sent=True,
    )


class FakeRepository:
    def __init__(self, records):
        self.records = records
        self.requested = None
        self.closed = False

    async def fetch_opportunities(self, *, status=None, limit=50):
        self.requested = (status, limit)
        return self.records

    async def count_by_status(self):
        return {"active": len(self.records), "cleared": 0, "total": len(self.records)}

    async def close(self):
        self.closed = True


@pytest.fixture
def reset_sys_argv():
    original = sys.argv.copy()
    yield
    sys.argv = original


@pytest.mark.usefixtures("reset_sys_argv")
def test_show_opportunities_cli_outputs_table(monkeypatch, capsys):
    repository = FakeRepository([_record()])
    monkeypatch.setattr(main, "SQLiteRepository", lambda path: repository)

    sys.argv = ["prog", "--show-opportunities", "--opportunity-status", "active", "--opportunity-limit", "5"]
    main.main()

    output = capsys.readouterr().out
    assert "Showing up to 5 tracked opportunities (status=active)" in output
    assert "Active: 1  Cleared: 0  Total: 1" in output
    assert "binance -> kucoin" in output
    assert "2.90" in output
    assert repository.requested == ("active", 5)
    assert repository.closed is True


@pytest.mark.usefixtures("reset_sys_argv")
def test_show_opportunities_cli_handles_empty_history(monkeypatch, capsys):
    monkeypatch.setattr(main, "SQLiteRepository", lambda path: FakeRepository([]))

    sys.argv = ["prog", "--show-opportunities"]
    main.main()

    assert "No tracked opportunities found." in capsys.readouterr().out


def test_opportunity_table(capsys, make_opportunity):
    main._print_opportunity_table([make_opportunity(net_profit_pct=1.25)])

    output = capsys.readouterr().out
    assert "Net %" in output
    assert "alpha" in output
    assert "1.250" in output


def test_build_scanner_wires_components(app_config):
    scanner = main.build_scanner(app_config._replace(check_transfers=True), {}, None)

    assert scanner.detector.config is scanner.config
    assert scanner.detector.cache is scanner.cache
    assert scanner.transfer_checker is not None
    assert scanner.repository is None
