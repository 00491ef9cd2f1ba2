"""
fringestage_vote/test_cli.py - CLI Coverage Tests

Each invocation opens the SQLite file and key file afresh, as separate
processes would.
"""
import json
from unittest.mock import patch

import pytest

from .conftest import THEATER, ALICE, BOB, CHARLIE, OUTSIDER, HAMLET_RATINGS
from .cli import main


@pytest.fixture
def cli(tmp_path, keys):
    key_file = tmp_path / "keys.json"
    key_file.write_text(json.dumps(keys.to_dict()))
    base = ["fringestage-vote", "--database", f"sqlite:///{tmp_path / 'vote.db'}", "--key-file", str(key_file)]

    def run(*argv):
        with patch('sys.argv', base + list(argv)):
            main()

    return run


def exit_code(run, *argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        run(*argv)
    return exc_info.value.code


class TestCLIFlow:

    def test_hamlet_round_trip(self, cli, capsys):
        """Create, vote, end, decrypt and store entirely through the CLI."""
        cli("--account", THEATER, "create-session", "Hamlet Preview", "Small Theater", "--duration", "3600")
        assert "Session created: 0" in capsys.readouterr().out

        for account, ratings in zip((ALICE, BOB, CHARLIE), HAMLET_RATINGS):
            cli("--account", account, "vote", "0", *map(str, ratings), "--comment", "bravo")
        assert capsys.readouterr().out.count("Vote submitted to session 0") == 3

        cli("--account", THEATER, "end-session", "0")
        cli("--account", THEATER, "request-decryption", "0")
        capsys.readouterr()

        cli("--account", THEATER, "decrypt-results", "0", "--store")
        out = capsys.readouterr().out
        assert "Session 0 (3 votes)" in out
        assert "total=255" in out
        assert "avg=85" in out
        assert "Results stored" in out

        cli("results", "0")
        results = json.loads(capsys.readouterr().out)
        assert results["total_performance"] == 263
        assert results["avg_stage_design"] == 81

        cli("verify-log")
        out = capsys.readouterr().out
        assert "Event Count:  7" in out
        assert "Chain OK" in out

    def test_decrypt_without_store(self, cli, capsys):
        """decrypt-results alone prints totals but publishes nothing."""
        cli("--account", THEATER, "create-session", "Solo", "Hall")
        cli("--account", ALICE, "vote", "0", "10", "20", "30", "40")
        cli("--account", THEATER, "end-session", "0")
        cli("--account", THEATER, "request-decryption", "0")
        capsys.readouterr()

        cli("--account", THEATER, "decrypt-results", "0")
        out = capsys.readouterr().out
        assert "total=40" in out
        assert "Results stored" not in out

        assert exit_code(cli, "results", "0") == 1
        assert "ResultsNotAvailable" in capsys.readouterr().err

    def test_session_info(self, cli, capsys):
        """session-info prints the session as JSON."""
        cli("--account", THEATER, "create-session", "Matinee", "Studio")
        capsys.readouterr()
        cli("session-info", "0")
        info = json.loads(capsys.readouterr().out)
        assert info["title"] == "Matinee"
        assert info["theater_company"] == THEATER

    def test_authorize_and_store(self, cli, capsys):
        """A delegate can publish totals through store-decrypted."""
        cli("--account", THEATER, "create-session", "Delegated", "Hall")
        cli("--account", THEATER, "authorize", "0", BOB)
        cli("--account", ALICE, "vote", "0", "1", "2", "3", "4")
        cli("--account", THEATER, "end-session", "0")
        cli("--account", BOB, "request-decryption", "0")
        cli("--account", BOB, "store-decrypted", "0", "1", "2", "3", "4")
        assert "Results stored for session 0" in capsys.readouterr().out


class TestCLIErrors:

    def test_rejection_exit_code(self, cli, capsys):
        """Engine rejections exit 1 with the error name."""
        cli("--account", THEATER, "create-session", "Guarded", "Hall")
        assert exit_code(cli, "--account", OUTSIDER, "end-session", "0") == 1
        assert "Rejected: OnlyTheaterCompany" in capsys.readouterr().err

    def test_unknown_session(self, cli, capsys):
        """Reading a missing session exits 1."""
        assert exit_code(cli, "session-info", "3") == 1
        assert "SessionNotFound" in capsys.readouterr().err

    def test_rating_out_of_range(self, cli, capsys):
        """Invalid ratings are a usage error."""
        cli("--account", THEATER, "create-session", "Strict", "Hall")
        assert exit_code(cli, "--account", ALICE, "vote", "0", "150", "1", "1", "1") == 2
        assert "All ratings must be between 0 and 100" in capsys.readouterr().err

    def test_account_required(self, cli):
        """Commands acting as a caller need --account."""
        assert exit_code(cli, "end-session", "0") == 2

    def test_verify_empty_log(self, cli, capsys):
        """An empty ledger verifies."""
        cli("verify-log")
        out = capsys.readouterr().out
        assert "Event Count:  0" in out
        assert "Chain OK" in out
