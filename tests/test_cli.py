"""Tests for the command-line interface."""

import io
import json
import sys

import pytest

from flagpost.cli import build_parser, main
from flagpost.hashing import compute_image_hashes


@pytest.fixture(autouse=True)
def no_stdin(monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))


def run(capsys, argv, engine):
    code = main(argv, engine=engine)
    return code, capsys.readouterr().out


class TestMain:
    def test_allow_exits_zero(self, capsys, engine):
        code, out = run(capsys, ["--text", "Lovely day at the beach"], engine)
        assert code == 0
        assert json.loads(out)["label"] == "allow"

    def test_block_exits_one(self, capsys, engine):
        code, out = run(capsys, ["--text", "I want to die, I will kill you"], engine)
        assert code == 1
        assert json.loads(out)["label"] == "block"

    def test_reads_stdin(self, capsys, engine, monkeypatch):
        monkeypatch.setattr(sys, "stdin", io.StringIO("FREE money!!! Click https://bit.ly/abc now\n"))
        code, out = run(capsys, ["--platform", "x"], engine)
        data = json.loads(out)
        assert code == 0
        assert data["platform"] == "x"
        assert data["label"] == "review"

    def test_context_from_file(self, capsys, engine, tmp_path):
        path = tmp_path / "context.json"
        path.write_text(json.dumps({"account": {"priorViolations": 5}}))
        code, out = run(capsys, ["--text", "hello", "--context", str(path)], engine)
        categories = [f["category"] for f in json.loads(out)["flags"]]
        assert categories == ["repeat_violator"]

    def test_explain(self, capsys, engine):
        _, out = run(capsys, ["--text", "hello there", "--explain"], engine)
        assert json.loads(out)["explanation"].endswith("No issues detected.")

    def test_debug_prints_provider_status(self, capsys, engine):
        _, out = run(capsys, ["--text", "hello", "--debug"], engine)
        assert out.startswith("Provider Status:\n  rules: enabled")
        assert "Timings:" in out
        payload = out.split("---\n", 1)[1]
        assert "featureMultipliers" in json.loads(payload)["debug"]


class TestUsageErrors:
    def test_no_content(self, engine):
        with pytest.raises(SystemExit) as exc:
            main([], engine=engine)
        assert exc.value.code == 2

    def test_invalid_context(self, engine):
        with pytest.raises(SystemExit) as exc:
            main(["--text", "hi", "--context", "{nope"], engine=engine)
        assert exc.value.code == 2

    def test_context_with_wrong_shape(self, engine):
        with pytest.raises(SystemExit) as exc:
            main(["--text", "hi", "--context", '{"engagement": 3}'], engine=engine)
        assert exc.value.code == 2

    def test_unknown_platform(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--platform", "myspace"])

    def test_context_with_wrong_field_type(self, engine):
        with pytest.raises(SystemExit) as exc:
            main(
                ["--text", "hi", "--context", '{"account": {"priorViolations": "5"}}'],
                engine=engine,
            )
        assert exc.value.code == 2


class TestExistingHashes:
    def test_matches_given_hash(self, capsys, engine, gradient_png, monkeypatch):
        monkeypatch.setattr(engine.images, "fetcher", lambda url: gradient_png)
        known = compute_image_hashes(gradient_png).phash
        code, out = run(
            capsys,
            ["--media-url", "https://cdn.example.com/a.png", "--existing-hash", known],
            engine,
        )
        assert code == 0
        assert [f["category"] for f in json.loads(out)["flags"]] == ["duplicate"]
