import json

from typer.testing import CliRunner

from weekly_points import cli
from weekly_points.handler import LeaderboardUnavailable

runner = CliRunner()

RESULT = {
    "current_period_start": 1,
    "previous_period_start": 0,
    "current_ranking": [{"address": "0xa", "points": "3"}, {"address": "0xb", "points": "2"}],
    "previous_ranking": [],
    "meta": {"last_processed_block": 10, "mode": "cold"},
}


class FakeService:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def query(self, period_start, force_refresh=False, include_names=False):
        self.calls.append(("query", period_start, force_refresh, include_names))
        if self.fail:
            raise LeaderboardUnavailable("no data")
        return json.loads(json.dumps(RESULT))

    def refresh(self, period_start=None):
        self.calls.append(("refresh", period_start))
        if self.fail:
            raise LeaderboardUnavailable("no data")
        return RESULT


def test_query_prints_json(monkeypatch):
    svc = FakeService()
    monkeypatch.setattr(cli, "_service", lambda: svc)
    res = runner.invoke(cli.app, ["query", "--refresh", "--top", "1", "--period-start", "5"])
    assert res.exit_code == 0, res.output
    out = json.loads(res.stdout)
    assert out["current_ranking"] == [{"address": "0xa", "points": "3"}]
    assert svc.calls == [("query", 5, True, False)]


def test_query_failure_exits_nonzero(monkeypatch):
    monkeypatch.setattr(cli, "_service", lambda: FakeService(fail=True))
    res = runner.invoke(cli.app, ["query"])
    assert res.exit_code == 1


def test_refresh_prints_meta(monkeypatch):
    monkeypatch.setattr(cli, "_service", lambda: FakeService())
    res = runner.invoke(cli.app, ["refresh"])
    assert res.exit_code == 0, res.output
    assert json.loads(res.stdout) == {"ok": True, "meta": RESULT["meta"]}
