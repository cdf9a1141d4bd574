# tests/test_cli.py
from __future__ import annotations

import argparse
import io
import json
import math

import pytest

from cdasim.cli import build_parser, main, observations, parse_mix, run_egta
from cdasim.errors import ConfigurationError

SPEC = {"assignment": {"buyers": {"0.1": 3, "0.3_Shift": 2}, "sellers": {"0.2": 5}}, "configuration": {"cda": True}}


def test_parse_mix():
    assert parse_mix(["0.2=5", "zi=3", "0.2=1"]) == {"0.2": 6, "zi": 3}
    assert parse_mix(None) == {}
    with pytest.raises(ConfigurationError):
        parse_mix(["0.2"])
    with pytest.raises(ConfigurationError):
        parse_mix(["0.2=x"])


def test_observations_shape():
    obs = observations(SPEC, 3, seed=5)
    assert len(obs) == 3
    for o in obs:
        assert len(o["players"]) == 10
        roles = {p["role"] for p in o["players"]}
        assert roles == {"buyers", "sellers"}
        assert {p["strategy"] for p in o["players"]} == {"0.1", "0.3_Shift", "0.2"}
        f = o["features"]
        assert set(f) == {"surplus", "ce_surplus", "im_surplus", "em_surplus", "ce_price"}
        assert math.isclose(f["ce_surplus"], f["surplus"] + f["im_surplus"] + f["em_surplus"], abs_tol=1e-9)
        assert math.isclose(sum(p["payoff"] for p in o["players"]), f["surplus"], abs_tol=1e-9)


def test_run_egta_reads_lines_and_writes_json():
    stdin = io.StringIO(json.dumps(SPEC) + "\n\n" + json.dumps({**SPEC, "configuration": {"cda": False}}) + "\n")
    stdout = io.StringIO()
    run_egta(argparse.Namespace(obs=2, flush=True, seed=11), stdin=stdin, stdout=stdout)
    lines = stdout.getvalue().splitlines()
    assert len(lines) == 4
    assert all("players" in json.loads(line) for line in lines)


@pytest.mark.parametrize("bad", ["{not json", "[1, 2]"])
def test_run_egta_rejects_malformed_lines(bad):
    stdin = io.StringIO(json.dumps(SPEC) + "\n" + bad + "\n")
    stdout = io.StringIO()
    with pytest.raises(ConfigurationError, match="line 2"):
        run_egta(argparse.Namespace(obs=1, flush=False, seed=3), stdin=stdin, stdout=stdout)
    assert len(stdout.getvalue().splitlines()) == 1


def test_main_reports_malformed_egta_input(monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO("{oops\n"))
    with pytest.raises(SystemExit) as exc:
        main(["egta"])
    assert exc.value.code == 2
    assert "line 1" in capsys.readouterr().err


def test_parser_defaults():
    args = build_parser().parse_args(["egta"])
    assert args.obs == 1 and not args.flush
    args = build_parser().parse_args(["sim", "--mode", "call", "--buyers", "0.1=4", "zi=2"])
    assert args.mode == "call" and args.buyers == ["0.1=4", "zi=2"]


def test_main_reports_configuration_errors(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["sim", "--periods", "0", "--report", "unused"])
    assert exc.value.code == 2
    assert "configuration error" in capsys.readouterr().err


def test_main_sim_writes_artifacts(tmp_path, capsys):
    main(["sim", "--periods", "3", "--buyers", "0.1=3", "--sellers", "0.1=3", "--report", str(tmp_path)])
    out = json.loads(capsys.readouterr().out)
    assert out["summary"]["periods"] == 3
    assert (tmp_path / "figures" / "efficiency.png").exists()
    for name in ("spread.png", "mid.png", "depths.png", "imbalance.png"):
        assert (tmp_path / "figures" / name).exists()
