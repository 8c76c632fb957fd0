from __future__ import annotations

import json

from virtualfeed import cli


def test_scrape_command_prints_report(monkeypatch, capsys) -> None:
    async def fake_scrape_once() -> dict:
        return {"inserted": 3, "replaced": 1}

    monkeypatch.setattr(cli, "scrape_once", fake_scrape_once)

    cli.main(["scrape"])

    assert json.loads(capsys.readouterr().out) == {"inserted": 3, "replaced": 1}


def test_default_command_serves_app(monkeypatch) -> None:
    calls: list[tuple[str, dict]] = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))

    cli.main([])

    assert calls[0][0] == "app.main:app"
    assert calls[0][1]["port"] == cli.settings.server_port
