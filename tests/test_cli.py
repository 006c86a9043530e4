import pytest

import main
from pipeslicer.modules.cli import parse_args


def test_parse_args_requires_command(capsys):
    with pytest.raises(SystemExit) as exc:
        parse_args([])
    assert exc.value.code == 0
    assert "COMMAND" in capsys.readouterr().out


def test_parse_copy():
    args = parse_args(["--timeout", "30", "copy", "1", "app:v1", "2", "backup/app:v1"])

    assert args.command == "copy"
    assert args.timeout == 30.0
    assert (args.source_registry_id, args.target_registry_id) == (1, 2)


def test_registry_and_build_commands(tmp_path, capsys):
    db = str(tmp_path / "cli.db")

    assert main.main(["--db", db, "add-registry", "--name", "local", "--url", "localhost:5000",
                      "--username", "admin", "--password", "secret"]) == 0
    assert main.main(["--db", db, "registries"]) == 0
    out = capsys.readouterr().out
    assert "[+] Stored registry local with id 1" in out
    assert "localhost:5000" in out

    assert main.main(["--db", db, "record-build", "--service", "api", "--tag", "v1",
                      "--commit", "0123456789abcdef", "--branch", "main"]) == 0
    assert main.main(["--db", db, "history", "api"]) == 0
    assert "0123456789ab" in capsys.readouterr().out


def test_errors_exit_nonzero(tmp_path, capsys):
    db = str(tmp_path / "cli.db")

    assert main.main(["--db", db, "add-registry", "--name", "x", "--url", "localhost:5000"]) == 1
    assert main.main(["--db", db, "images", "7"]) == 1
    out = capsys.readouterr().out
    assert "[!] Error:" in out
