# tests/test_app.py

from osprey.app import main, parse_args


def test_parse_sync_command():
    args = parse_args(["sync", "work", "--mailbox", "Archive", "--load-more"])

    assert args.command == "sync"
    assert args.account == "work"
    assert args.mailbox == "Archive"
    assert args.load_more
    assert not args.refresh


def test_parse_search_defaults():
    args = parse_args(["search", "work", "invoice"])

    assert args.mailbox == "INBOX"
    assert args.offset == 0


def test_paths_flag(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))

    assert main(["--paths"]) == 0
    assert "Config file:" in capsys.readouterr().out


def test_no_command_is_a_usage_error(capsys):
    assert main([]) == 2
    assert "Nothing to do" in capsys.readouterr().err


def test_invalid_config_file(tmp_path, capsys):
    path = tmp_path / "config.toml"
    path.write_text("[sync\n")

    assert main(["--config", str(path), "push"]) == 1
    assert "Config error" in capsys.readouterr().err
