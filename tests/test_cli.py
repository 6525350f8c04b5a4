"""
Tests for sharedmem.cli — JSON output, exit codes and flag/env precedence.

Exit codes:
    0  success
    1  business failure or bad config
    2  internal failure
"""

import io
import json

import pytest

from sharedmem.cli import build_parser, main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SHAREDMEM_BACKEND", "SHAREDMEM_STORAGE_DIR", "STORAGE_DIR",
                 "SHAREDMEM_DB", "SHAREDMEM_CONFIG"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def flags(tmp_path):
    return ["--storage-dir", str(tmp_path / "mem")]


def run(capsys, argv):
    """Run the CLI; return (exit code, parsed stdout payload or None)."""
    code = 0
    try:
        main(argv)
    except SystemExit as e:
        code = e.code
    out = capsys.readouterr().out
    return code, (json.loads(out) if out.strip() else None)


class TestParser:
    def test_global_flags_before_or_after(self, tmp_path):
        a = build_parser().parse_args(["--backend", "sqlite", "list"])
        b = build_parser().parse_args(["list", "--backend", "sqlite"])
        assert a.backend == b.backend == "sqlite"

    def test_delete_requires_agent(self, capsys):
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args(["delete", "k"])
        assert exc.value.code == 2

    def test_no_command(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 1


class TestCommands:
    def test_store_get_list_stats(self, capsys, flags):
        code, r = run(capsys, ["store", "hello world", "--key", "k", "--agent", "alice"] + flags)
        assert code == 0
        assert r["contentLength"] == 11

        code, r = run(capsys, ["get", "k"] + flags)
        assert code == 0
        assert r["content"] == "hello world"
        assert r["accessCount"] == 1

        code, r = run(capsys, ["list"] + flags)
        assert r["count"] == 1

        code, r = run(capsys, ["stats"] + flags)
        assert r["stats"]["topContributors"] == ["alice"]

    def test_store_from_stdin(self, capsys, flags, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("piped text"))
        code, r = run(capsys, ["store", "-", "--key", "p"] + flags)
        assert code == 0
        _, r = run(capsys, ["get", "p"] + flags)
        assert r["content"] == "piped text"

    def test_search(self, capsys, flags):
        run(capsys, ["store", "Find Me please", "--key", "f"] + flags)
        code, r = run(capsys, ["search", "find me"] + flags)
        assert code == 0
        assert [h["key"] for h in r["results"]] == ["f"]

    def test_tags_comma_separated(self, capsys, flags):
        run(capsys, ["store", "x", "--key", "t", "--tags", "a,b"] + flags)
        _, r = run(capsys, ["get", "t"] + flags)
        assert r["tags"] == ["a", "b"]

    def test_delete(self, capsys, flags):
        run(capsys, ["store", "x", "--key", "k", "--agent", "alice"] + flags)
        code, r = run(capsys, ["delete", "k", "--agent", "bob"] + flags)
        assert code == 1
        assert r["error"] == "Can only delete your own entries"
        code, r = run(capsys, ["delete", "k", "--agent", "alice"] + flags)
        assert code == 0

    def test_sqlite_backend(self, capsys, tmp_path):
        db = ["--backend", "sqlite", "--db", str(tmp_path / "m.db")]
        run(capsys, ["store", "in sqlite", "--key", "s"] + db)
        code, r = run(capsys, ["get", "s"] + db)
        assert code == 0
        assert r["content"] == "in sqlite"
        assert (tmp_path / "m.db").exists()


class TestExitCodes:
    def test_missing_key_is_business_failure(self, capsys, flags):
        code, r = run(capsys, ["get", "nope"] + flags)
        assert code == 1
        assert r["success"] is False

    def test_unsafe_scrape_is_business_failure(self, capsys, flags):
        code, r = run(capsys, ["scrape", "http://localhost/admin"] + flags)
        assert code == 1
        assert r["error"] == "Refusing to fetch localhost"

    def test_bad_config_exits_1(self, capsys, tmp_path, flags):
        cfg = tmp_path / "cfg.json"
        cfg.write_text(json.dumps({"fetch": {"max_bytes": 1}}))
        code, _ = run(capsys, ["list", "--config", str(cfg)] + flags)
        assert code == 1

    def test_backend_unavailable_exits_2(self, capsys, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        code, _ = run(capsys, ["list", "--backend", "sqlite", "--db", str(blocker / "m.db")])
        assert code == 2


class TestEnvironment:
    def test_storage_dir_from_env(self, capsys, tmp_path, monkeypatch):
        monkeypatch.setenv("SHAREDMEM_STORAGE_DIR", str(tmp_path / "envmem"))
        run(capsys, ["store", "x", "--key", "e"])
        assert (tmp_path / "envmem" / "shared-memory.json").exists()

    def test_legacy_storage_dir_env(self, capsys, tmp_path, monkeypatch):
        monkeypatch.setenv("STORAGE_DIR", str(tmp_path / "legacy"))
        run(capsys, ["store", "x", "--key", "e"])
        assert (tmp_path / "legacy" / "shared-memory.json").exists()

    def test_flag_beats_env(self, capsys, tmp_path, monkeypatch):
        monkeypatch.setenv("SHAREDMEM_STORAGE_DIR", str(tmp_path / "envmem"))
        run(capsys, ["store", "x", "--key", "e", "--storage-dir", str(tmp_path / "flag")])
        assert (tmp_path / "flag" / "shared-memory.json").exists()
        assert not (tmp_path / "envmem").exists()

    def test_env_beats_config_file(self, capsys, tmp_path, monkeypatch):
        cfg = tmp_path / "cfg.json"
        cfg.write_text(json.dumps({"store": {"backend": "sqlite", "db_path": str(tmp_path / "cfg.db")}}))
        monkeypatch.setenv("SHAREDMEM_BACKEND", "file")
        monkeypatch.setenv("SHAREDMEM_STORAGE_DIR", str(tmp_path / "envmem"))
        run(capsys, ["store", "x", "--key", "e", "--config", str(cfg)])
        assert (tmp_path / "envmem" / "shared-memory.json").exists()
        assert not (tmp_path / "cfg.db").exists()

    def test_config_file_used(self, capsys, tmp_path):
        cfg = tmp_path / "cfg.json"
        cfg.write_text(json.dumps({"store": {"backend": "sqlite", "db_path": str(tmp_path / "cfg.db")}}))
        run(capsys, ["store", "x", "--key", "e", "--config", str(cfg)])
        assert (tmp_path / "cfg.db").exists()
